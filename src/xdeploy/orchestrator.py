"""Multi-role CREATE2 deployment for a single chain."""

import logging
from typing import TYPE_CHECKING, Any, Optional, Sequence

from hexbytes import HexBytes

from .console import make_status_logger
from .constants import DETERMINISTIC_DEPLOYER_ADDRESS, UNIVERSAL_CHAIN_ID
from .create2 import derive_salt, predict_address, predict_factory_address
from .exceptions import (
    ChainError,
    ConfigurationError,
    LedgerError,
    SaltAlreadyUsed,
    SignerError,
)
from .ledger import Create2Factory, DeploymentLedger
from .models import ConfigCall, DeploymentConfig, RoleResult, RoleSpec, RoleStatus
from .records import (
    ContractRecord,
    Create2Info,
    DeploymentRecord,
    available_filename,
    deployment_record_filename,
    write_record,
)
from .util import (
    ABI_CODING_ERRORS,
    decode_result,
    encode_call,
    format_timestamp,
    to_checksum_address,
)
from .workflows import execute_transaction

if TYPE_CHECKING:
    from eth_typing import ChecksumAddress

    from .auth import Signer
    from .chain import Chain

logger = logging.getLogger(__name__)
status = make_status_logger(logger)


def salt_chain_id(config: DeploymentConfig, chain_id: int) -> int:
    return chain_id if config.chain_specific else UNIVERSAL_CHAIN_ID


def role_namespace(namespace: str, role: str) -> str:
    return f"{namespace}-{role}"


def factory_salt(config: DeploymentConfig) -> HexBytes:
    # The factory must land on the same address everywhere, so its salt
    # never includes the chain ID.
    return derive_salt(
        role_namespace(config.namespace, "factory"), UNIVERSAL_CHAIN_ID, config.nonce
    )


def resolve_factory_address(config: DeploymentConfig) -> "ChecksumAddress":
    if config.factory_creation_code is not None:
        predicted = predict_factory_address(
            config.factory_creation_code, factory_salt(config)
        )
        if (
            config.factory is not None
            and to_checksum_address(config.factory) != predicted
        ):
            raise ConfigurationError(
                f"Configured factory {config.factory} does not match the "
                f"address {predicted} its creation code deploys to."
            )
        return predicted
    if config.factory is None:
        raise ConfigurationError(
            "No factory address or factory creation code configured."
        )
    return to_checksum_address(config.factory)


def plan_roles(
    config: DeploymentConfig, factory: str, chain_id: int
) -> list[tuple[str, HexBytes, "ChecksumAddress"]]:
    """Salt and predicted address of every role, without touching a chain."""
    plan: list[tuple[str, HexBytes, "ChecksumAddress"]] = []
    for role in config.roles:
        salt = derive_salt(
            role_namespace(config.namespace, role.name),
            salt_chain_id(config, chain_id),
            config.nonce,
        )
        address = predict_address(factory, salt, role.creation_code)
        plan.append((role.name, salt, address))
    return plan


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return value.lower()
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, (list, tuple)):
        return tuple(_normalize(v) for v in value)
    return value


class DeploymentOrchestrator:
    """Deploy every role of a configuration, then write one record.

    Roles are processed strictly in order. A chain or signer failure, or
    getter data that does not decode, aborts only the role it happened in.
    Anything that could fail to encode is rejected when the configuration is
    built, before the first transaction. A partial run can be finished later by
    running the same configuration again: roles already deployed come back
    as `existing` and their configuration calls are re-checked.

    Two runs against the same factory and chain must not overlap.
    """

    def __init__(
        self,
        chain: "Chain",
        signer: "Signer",
        config: DeploymentConfig,
        ledger: Optional[DeploymentLedger] = None,
    ):
        self.chain = chain
        self.signer = signer
        self.config = config
        self.ledger = ledger
        self.results: list[RoleResult] = []
        self.record_path: Optional[str] = None

    def ensure_factory(self) -> Create2Factory:
        if self.ledger is not None:
            return self.ledger.factory
        address = resolve_factory_address(self.config)
        if len(self.chain.get_code(address)) > 0:
            logger.info(f"Using CREATE2 factory at {address}")
            return Create2Factory(self.chain, address)
        if self.config.factory_creation_code is None:
            raise ConfigurationError(f"No CREATE2 factory deployed at {address}.")
        deployer = to_checksum_address(DETERMINISTIC_DEPLOYER_ADDRESS)
        if len(self.chain.get_code(deployer)) == 0:
            raise ConfigurationError(
                f"Deterministic deployment proxy {deployer} is not available "
                f"on chain {self.chain.chain_id}."
            )
        with status(f"Deploying CREATE2 factory to {address}..."):
            execute_transaction(
                self.chain,
                self.signer,
                to=deployer,
                data=factory_salt(self.config) + self.config.factory_creation_code,
            )
        if len(self.chain.get_code(address)) == 0:
            raise ChainError(f"Factory deployment left no code at {address}.")
        return Create2Factory(self.chain, address)

    def run(self) -> DeploymentRecord:
        factory = self.ensure_factory()
        if self.ledger is None:
            self.ledger = DeploymentLedger(factory)
        chain_id = self.chain.chain_id
        plan = plan_roles(self.config, factory.address, chain_id)
        self.results = [
            self.deploy_role(role, salt, address)
            for role, (_, salt, address) in zip(self.config.roles, plan)
        ]
        record = self.build_record(factory, self.results)
        self.record_path = write_record(
            record,
            self.config.output_dir,
            available_filename(
                self.config.output_dir,
                lambda millis: deployment_record_filename(
                    self.config.network, chain_id, millis
                ),
            ),
        )
        return record

    def deploy_role(
        self, role: RoleSpec, salt: HexBytes, address: "ChecksumAddress"
    ) -> RoleResult:
        assert self.ledger is not None
        logger.info(f"Role '{role.name}': salt {salt.to_0x_hex()} -> {address}")
        try:
            try:
                with status(f"Deploying {role.name}..."):
                    self.ledger.deploy(salt, role.creation_code, self.signer)
                role_status = RoleStatus.DEPLOYED
            except SaltAlreadyUsed:
                if not self.ledger.has_code(address):
                    raise LedgerError(
                        f"Salt for '{role.name}' is used but {address} has no code. "
                        "It was consumed by different creation code."
                    )
                logger.info(f"Role '{role.name}' already deployed at {address}")
                role_status = RoleStatus.EXISTING
            calls_sent = self.configure(role.name, address, role.calls)
            bytecode_hash = self.ledger.bytecode_hash(address)
        except (ChainError, SignerError, LedgerError, *ABI_CODING_ERRORS) as exc:
            logger.error(f"Role '{role.name}' failed: {exc}")
            return RoleResult(
                role=role.name,
                salt=salt,
                address=address,
                status=RoleStatus.FAILED,
                error=str(exc),
            )
        return RoleResult(
            role=role.name,
            salt=salt,
            address=address,
            status=role_status,
            bytecode_hash=bytecode_hash,
            calls_sent=calls_sent,
        )

    def configure(
        self, role: str, address: "ChecksumAddress", calls: Sequence[ConfigCall]
    ) -> int:
        sent = 0
        for call in calls:
            label = call.description or call.setter
            if call.getter is not None:
                returned = self.chain.call(
                    address, encode_call(call.getter, call.getter_args)
                )
                values = decode_result(call.getter_returns, returned)
                current = values[0] if len(values) == 1 else values
                if _normalize(current) == _normalize(call.expected):
                    logger.info(f"{role}: '{label}' already applied")
                    continue
            with status(f"{role}: {label}..."):
                execute_transaction(
                    self.chain,
                    self.signer,
                    to=address,
                    data=encode_call(call.setter, call.args),
                )
            sent += 1
        return sent

    def build_record(
        self, factory: Create2Factory, results: Sequence[RoleResult]
    ) -> DeploymentRecord:
        metadata = {role.name: role.metadata for role in self.config.roles}
        contracts: dict[str, ContractRecord] = {}
        failures: dict[str, str] = {}
        for result in results:
            if result.status is RoleStatus.FAILED:
                failures[result.role] = result.error or "unknown error"
                continue
            assert result.bytecode_hash is not None
            contracts[result.role] = ContractRecord(
                address=result.address,
                bytecode_hash=result.bytecode_hash.to_0x_hex(),
                status=result.status.value,
                **metadata[result.role],
            )
        return DeploymentRecord(
            network=self.config.network,
            chain_id=self.chain.chain_id,
            timestamp=format_timestamp(),
            deployer=self.signer.address,
            create2=Create2Info(
                factory=factory.address,
                base_salt=self.config.namespace,
                nonce=self.config.nonce,
                chain_specific=self.config.chain_specific,
            ),
            salts={r.role: r.salt.to_0x_hex() for r in results},
            contracts=contracts,
            failures=failures,
            complete=len(failures) == 0,
            **self.config.auxiliary,
        )
