"""Off-chain mirror of the salts consumed on a CREATE2 factory."""

import logging
from typing import TYPE_CHECKING, Optional

from hexbytes import HexBytes

from .constants import FACTORY_DEPLOY_FUNC, FACTORY_SALT_USED_FUNC
from .create2 import creation_code_hash, predict_address, runtime_code_hash
from .exceptions import BytecodeNotFound, ChainError, DerivationError, SaltAlreadyUsed
from .models import LedgerEntry
from .util import decode_result, encode_call, to_checksum_address
from .workflows import execute_transaction

if TYPE_CHECKING:
    from eth_typing import ChecksumAddress

    from .auth import Signer
    from .chain import Chain

logger = logging.getLogger(__name__)


class Create2Factory:
    def __init__(self, chain: "Chain", address: str):
        self.chain = chain
        self.address = to_checksum_address(address)

    def __repr__(self):
        return f"Create2Factory({self.address})"

    def salt_used(self, salt: bytes) -> bool:
        data = encode_call(FACTORY_SALT_USED_FUNC, [bytes(salt)])
        (used,) = decode_result(["bool"], self.chain.call(self.address, data))
        return bool(used)

    def deployment_calldata(self, creation_code: bytes, salt: bytes) -> HexBytes:
        return encode_call(FACTORY_DEPLOY_FUNC, [bytes(creation_code), bytes(salt)])


class DeploymentLedger:
    """Record of every salt consumed through one factory instance.

    A salt moves from unused to used exactly once and never back. The
    on-chain factory is the source of truth: a salt consumed by another
    process is reported as used even when this ledger has no entry for it.
    """

    def __init__(self, factory: Create2Factory):
        self.factory = factory
        self.chain = factory.chain
        self._entries: dict[bytes, LedgerEntry] = {}

    @property
    def entries(self) -> tuple[LedgerEntry, ...]:
        return tuple(self._entries.values())

    def get(self, salt: bytes) -> Optional[LedgerEntry]:
        return self._entries.get(bytes(salt))

    def is_used(self, salt: bytes) -> bool:
        if bytes(salt) in self._entries:
            return True
        return self.factory.salt_used(salt)

    def has_code(self, address: "ChecksumAddress") -> bool:
        return len(self.chain.get_code(address)) > 0

    def is_deployed(self, address: "ChecksumAddress") -> bool:
        return self.has_code(address)

    def bytecode_hash(self, address: "ChecksumAddress") -> HexBytes:
        code = self.chain.get_code(address)
        if len(code) == 0:
            raise BytecodeNotFound(address)
        return runtime_code_hash(code)

    def record_deployment(
        self,
        salt: bytes,
        address: "ChecksumAddress",
        creation_code: bytes,
        deployer: "ChecksumAddress",
        block_number: int,
    ) -> LedgerEntry:
        code_hash = creation_code_hash(creation_code)
        if len(salt) != 32:
            raise DerivationError(f"Salt must be 32 bytes, got {len(salt)}.")
        if bytes(salt) in self._entries:
            raise SaltAlreadyUsed(salt)
        entry = LedgerEntry(
            salt=HexBytes(salt),
            address=to_checksum_address(address),
            creation_code_hash=code_hash,
            deployer=to_checksum_address(deployer),
            block_number=block_number,
        )
        self._entries[bytes(salt)] = entry
        logger.info(f"Recorded {entry.address} for salt {entry.salt.to_0x_hex()}")
        return entry

    def deploy(
        self, salt: bytes, creation_code: bytes, signer: "Signer"
    ) -> LedgerEntry:
        """Deploy through the factory and record the result.

        The entry is written only after the transaction succeeded. A revert
        or a lost connection leaves the ledger untouched.
        """
        address = predict_address(self.factory.address, salt, creation_code)
        if self.is_used(salt):
            raise SaltAlreadyUsed(salt)
        receipt = execute_transaction(
            self.chain,
            signer,
            to=self.factory.address,
            data=self.factory.deployment_calldata(creation_code, salt),
        )
        if not self.has_code(address):
            raise ChainError(
                f"Factory transaction succeeded but no code exists at {address}."
            )
        return self.record_deployment(
            salt, address, creation_code, signer.address, int(receipt["blockNumber"])
        )
