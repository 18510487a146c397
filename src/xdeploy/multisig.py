"""Safe multisig hierarchy: validation and deterministic creation.

Three tiers are used for contract administration:

- level 2, admin (2-of-3): configuration and pause controls
- level 3, treasury (3-of-5): fund withdrawals
- level 4, emergency (1-of-3): emergency pause only
"""

import dataclasses
import logging
import os
import re
from enum import IntEnum
from typing import TYPE_CHECKING, NamedTuple, Optional, Sequence

from eth_utils.address import is_address
from hexbytes import HexBytes

from .console import make_status_logger
from .constants import (
    CREATE_CHAIN_SPECIFIC_PROXY_FUNC,
    CREATE_PROXY_FUNC,
    MULTISIG_RECORD_PREFIX,
    SAFE_GET_OWNERS_FUNC,
    SAFE_GET_THRESHOLD_FUNC,
    SAFE_IS_OWNER_FUNC,
    TRANSFER_OWNERSHIP_FUNC,
    UNIVERSAL_CHAIN_ID,
)
from .create2 import derive_salt, salt_to_uint
from .exceptions import ChainError, ConfigurationError, MultisigConfigError
from .models import SafeDeployParams
from .records import (
    DeploymentRecord,
    MultisigInfo,
    MultisigRecord,
    SafeFactoryInfo,
    TransactionInfo,
    load_record,
)
from .util import (
    compute_safe_address,
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


class MultisigLevel(IntEnum):
    ADMIN = 2
    TREASURY = 3
    EMERGENCY = 4


class LevelRule(NamedTuple):
    level: MultisigLevel
    title: str
    signers: int
    threshold: int
    purpose: str
    permissions: tuple[str, ...]
    notes: tuple[str, ...]


LEVEL_RULES: dict[MultisigLevel, LevelRule] = {
    MultisigLevel.ADMIN: LevelRule(
        level=MultisigLevel.ADMIN,
        title="Admin Multisig",
        signers=3,
        threshold=2,
        purpose="Contract configuration, pause controls",
        permissions=(
            "Pause/unpause contracts",
            "Add/remove supported tokens",
            "Approve/revoke bridges",
            "Update fee parameters",
        ),
        notes=("Rotation: Quarterly or on-demand",),
    ),
    MultisigLevel.TREASURY: LevelRule(
        level=MultisigLevel.TREASURY,
        title="Treasury Multisig",
        signers=5,
        threshold=3,
        purpose="Fund withdrawals, treasury management",
        permissions=(
            "Withdraw collected fees",
            "Manage treasury funds",
            "Approve large transactions",
        ),
        notes=("Limits: Daily/monthly withdrawal caps", "Rotation: Semi-annually"),
    ),
    MultisigLevel.EMERGENCY: LevelRule(
        level=MultisigLevel.EMERGENCY,
        title="Emergency Response",
        signers=3,
        threshold=1,
        purpose="Emergency pause, critical incident response",
        permissions=(
            "Emergency pause only",
            "Cannot withdraw funds",
        ),
        notes=(
            "Authority: Fast response team",
            "Activation: Immediate on security incident",
        ),
    ),
}


class ValidationResult(NamedTuple):
    valid: bool
    errors: list[str]


def validate_multisig_config(
    level: int, signers: Sequence[str], threshold: int
) -> ValidationResult:
    """Run every check and collect all violations, in a fixed order."""
    errors: list[str] = []
    valid_levels = [lvl.value for lvl in MultisigLevel]
    if level not in valid_levels:
        errors.append(f"Invalid level: {level}. Must be 2, 3, or 4")

    if len(signers) == 0:
        errors.append("No signers provided")
    for signer in signers:
        if not is_address(signer):
            errors.append(f"Invalid signer address: {signer}")
    if len({signer.lower() for signer in signers}) != len(signers):
        errors.append("Duplicate signer addresses detected")

    if threshold <= 0:
        errors.append("Threshold must be greater than 0")
    if threshold > len(signers):
        errors.append(
            f"Threshold ({threshold}) cannot exceed number of signers ({len(signers)})"
        )

    if level in valid_levels:
        rule = LEVEL_RULES[MultisigLevel(level)]
        if len(signers) != rule.signers:
            errors.append(
                f"Level {level} requires exactly {rule.signers} signers, "
                f"got {len(signers)}"
            )
        if threshold != rule.threshold:
            errors.append(
                f"Level {level} requires threshold of {rule.threshold}, got {threshold}"
            )

    return ValidationResult(valid=len(errors) == 0, errors=errors)


@dataclasses.dataclass(frozen=True, kw_only=True)
class MultisigSpec:
    level: int
    name: str
    signers: tuple[str, ...]
    threshold: int

    @classmethod
    def from_config(
        cls,
        level: int,
        signers: Sequence[str],
        threshold: Optional[int] = None,
        name: Optional[str] = None,
    ) -> "MultisigSpec":
        """Fill the threshold from the level policy when it is not given."""
        if threshold is None:
            if level not in LEVEL_RULES:
                raise MultisigConfigError(
                    [f"Invalid level: {level}. Must be 2, 3, or 4"]
                )
            threshold = LEVEL_RULES[MultisigLevel(level)].threshold
        return cls(
            level=level,
            name=name or f"Level {level} Multisig",
            signers=tuple(s.strip() for s in signers),
            threshold=threshold,
        )


def validate_spec(spec: MultisigSpec) -> ValidationResult:
    return validate_multisig_config(spec.level, spec.signers, spec.threshold)


def hierarchy_description() -> list[LevelRule]:
    return [LEVEL_RULES[level] for level in MultisigLevel]


def derive_safe_salt_nonce(namespace: str, spec: MultisigSpec, nonce: int) -> int:
    """Salt nonce for SafeProxyFactory, stable across runs and chains."""
    salt = derive_salt(
        f"{namespace}-multisig-level{spec.level}", UNIVERSAL_CHAIN_ID, nonce
    )
    return salt_to_uint(salt)


class SafeCreation(NamedTuple):
    initializer: HexBytes
    address: "ChecksumAddress"
    calldata: HexBytes


def build_safe_creation(spec: MultisigSpec, params: SafeDeployParams) -> SafeCreation:
    owners = [to_checksum_address(signer) for signer in spec.signers]
    initializer, address = compute_safe_address(
        chain_id=params.chain_id,
        fallback=params.fallback,
        owners=owners,
        proxy_factory=params.proxy_factory,
        salt_nonce=params.salt_nonce,
        singleton=params.singleton,
        threshold=spec.threshold,
    )
    calldata = encode_call(
        CREATE_PROXY_FUNC
        if params.chain_id is None
        else CREATE_CHAIN_SPECIFIC_PROXY_FUNC,
        [params.singleton, bytes(initializer), params.salt_nonce],
    )
    return SafeCreation(initializer=initializer, address=address, calldata=calldata)


def read_safe_owners(
    chain: "Chain", address: "ChecksumAddress"
) -> tuple[list["ChecksumAddress"], int]:
    (owners,) = decode_result(
        ["address[]"], chain.call(address, encode_call(SAFE_GET_OWNERS_FUNC))
    )
    (threshold,) = decode_result(
        ["uint256"], chain.call(address, encode_call(SAFE_GET_THRESHOLD_FUNC))
    )
    return [to_checksum_address(owner) for owner in owners], threshold


def deploy_multisig(
    chain: "Chain",
    signer: "Signer",
    spec: MultisigSpec,
    params: SafeDeployParams,
    network: str,
) -> MultisigRecord:
    result = validate_spec(spec)
    if not result.valid:
        raise MultisigConfigError(result.errors)
    if params.chain_id is not None and params.chain_id != chain.chain_id:
        raise ConfigurationError(
            f"Chain-specific Safe built for chain {params.chain_id} "
            f"but RPC reports chain {chain.chain_id}."
        )

    creation = build_safe_creation(spec, params)
    if len(chain.get_code(creation.address)) > 0:
        raise ConfigurationError(
            f"Safe account computed address {creation.address} already contains code."
        )

    with status(f"Creating Safe proxy at {creation.address}..."):
        receipt = execute_transaction(
            chain, signer, to=params.proxy_factory, data=creation.calldata
        )

    with status("Verifying Safe owners..."):
        owners, threshold = read_safe_owners(chain, creation.address)
    signers = [to_checksum_address(s) for s in spec.signers]
    if sorted(owners) != sorted(signers) or threshold != spec.threshold:
        raise ChainError(
            f"Safe at {creation.address} reports {threshold}-of-{len(owners)} "
            f"owners {owners}, expected {spec.threshold}-of-{len(signers)}."
        )

    return MultisigRecord(
        network=network,
        chain_id=chain.chain_id,
        timestamp=format_timestamp(),
        deployer=signer.address,
        multisig=MultisigInfo(
            level=spec.level,
            name=spec.name,
            address=creation.address,
            threshold=spec.threshold,
            signers=signers,
            owners=owners,
        ),
        gnosis_safe=SafeFactoryInfo(
            proxy_factory=params.proxy_factory,
            singleton=params.singleton,
            fallback_handler=params.fallback,
            salt_nonce=str(params.salt_nonce),
            chain_specific=params.chain_id is not None,
        ),
        transaction=TransactionInfo(
            hash=HexBytes(receipt["transactionHash"]).to_0x_hex(),
            block_number=int(receipt["blockNumber"]),
        ),
    )


SAFE_APP_PREFIXES = {
    "ethereum": "eth",
    "mainnet": "eth",
    "sepolia": "sep",
    "base": "base",
    "basesepolia": "base-sep",
}


def safe_dashboard_url(address: str, network: str) -> str:
    prefix = SAFE_APP_PREFIXES.get(network.lower(), network)
    return f"https://app.safe.global/{prefix}:{address}"


def find_multisig_record(
    directory: str, level: int, network: Optional[str] = None
) -> str:
    """Path of the most recent record of a multisig level."""
    if not os.path.isdir(directory):
        raise ConfigurationError(f"Deployments directory '{directory}' not found.")
    pattern = re.compile(rf"^{MULTISIG_RECORD_PREFIX}{level}-(.+)-(\d+)\.json$")
    candidates: list[tuple[int, str]] = []
    for filename in os.listdir(directory):
        match = pattern.match(filename)
        if match is None or (network is not None and match[1] != network):
            continue
        candidates.append((int(match[2]), filename))
    if not candidates:
        where = f" on {network}" if network is not None else ""
        raise ConfigurationError(
            f"No multisig deployment found for level {level}{where} in '{directory}'."
        )
    return os.path.join(directory, max(candidates)[1])


def load_multisig_record(
    directory: str, level: int, network: Optional[str] = None
) -> MultisigRecord:
    path = find_multisig_record(directory, level, network)
    record = load_record(path, MultisigRecord)
    logger.info(f"Loaded {path}: level {level} Safe {record.multisig.address}")
    return record


def is_safe_owner(chain: "Chain", safe: "ChecksumAddress", address: str) -> bool:
    data = encode_call(SAFE_IS_OWNER_FUNC, [to_checksum_address(address)])
    (owner,) = decode_result(["bool"], chain.call(safe, data))
    return bool(owner)


class SignerAccess(NamedTuple):
    owners: list["ChecksumAddress"]
    threshold: int
    access: dict["ChecksumAddress", bool]

    @property
    def valid(self) -> bool:
        return all(self.access.values())


def verify_signer_access(chain: "Chain", record: MultisigRecord) -> SignerAccess:
    """Check on chain that every recorded signer still owns the Safe."""
    if record.chain_id != chain.chain_id:
        raise ConfigurationError(
            f"Record is for chain {record.chain_id} "
            f"but RPC reports chain {chain.chain_id}."
        )
    safe = record.multisig.address
    if len(chain.get_code(safe)) == 0:
        raise ChainError(f"No Safe deployed at {safe}.")
    owners, threshold = read_safe_owners(chain, safe)
    access = {
        signer: is_safe_owner(chain, safe, signer)
        for signer in record.multisig.signers
    }
    return SignerAccess(owners=owners, threshold=threshold, access=access)


class SafeTransaction(NamedTuple):
    to: "ChecksumAddress"
    data: HexBytes
    value: int = 0


def ownership_transfer_transaction(contract: str, new_owner: str) -> SafeTransaction:
    """Hand an Ownable contract to a new owner such as a Safe.

    Contracts using two-step ownership still have to be accepted by the new
    owner with `acceptOwnership()`.
    """
    return SafeTransaction(
        to=to_checksum_address(contract),
        data=encode_call(TRANSFER_OWNERSHIP_FUNC, [to_checksum_address(new_owner)]),
    )


def ownership_transfers(
    record: DeploymentRecord,
    new_owner: str,
    roles: Optional[Sequence[str]] = None,
) -> dict[str, SafeTransaction]:
    if not is_address(new_owner):
        raise ConfigurationError(f"Invalid new owner address '{new_owner}'.")
    selected = list(roles) if roles else list(record.contracts)
    unknown = [role for role in selected if role not in record.contracts]
    if unknown:
        raise ConfigurationError(
            f"Roles {unknown} are not in the record, "
            f"which has {list(record.contracts)}."
        )
    return {
        role: ownership_transfer_transaction(
            record.contracts[role].address, new_owner
        )
        for role in selected
    }
