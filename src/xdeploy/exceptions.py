from typing import Optional, Sequence

from hexbytes import HexBytes


class XDeployError(Exception):
    """Base class for all errors raised by xdeploy."""


# Derivation errors are caller bugs and are never retried.
class DerivationError(XDeployError, ValueError):
    pass


class InvalidCreationCode(DerivationError):
    def __init__(self, msg: str = "Creation code must not be empty."):
        super().__init__(msg)


class LedgerError(XDeployError):
    pass


class SaltAlreadyUsed(LedgerError):
    def __init__(self, salt: bytes):
        self.salt = HexBytes(salt)
        super().__init__(f"Salt {self.salt.to_0x_hex()} has already been used.")


class BytecodeNotFound(LedgerError):
    def __init__(self, address: str):
        self.address = address
        super().__init__(f"No code deployed at {address}.")


class ChainError(XDeployError):
    pass


class TransactionReverted(ChainError):
    def __init__(self, tx_hash: bytes, msg: Optional[str] = None):
        self.tx_hash = HexBytes(tx_hash)
        super().__init__(msg or f"Transaction {self.tx_hash.to_0x_hex()} reverted.")


class SignerError(XDeployError):
    pass


class DeviceNotFound(SignerError):
    pass


class DeviceLocked(SignerError):
    pass


class UserRejected(SignerError):
    pass


class DeviceError(SignerError):
    pass


class AddressMismatch(SignerError):
    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Signer address {actual} does not match expected {expected}.")


class ConfigurationError(XDeployError):
    pass


class MultisigConfigError(ConfigurationError):
    """Raised with every violation found, never only the first one."""

    def __init__(self, errors: Sequence[str]):
        self.errors = list(errors)
        super().__init__("Invalid multisig configuration: " + "; ".join(self.errors))
