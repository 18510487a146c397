import dataclasses
import logging
import sys
from contextlib import contextmanager
from enum import Enum
from getpass import getpass
from typing import TYPE_CHECKING, Any, Optional, Protocol, cast

import click
from hexbytes import HexBytes

from .console import make_status_logger
from .constants import DEFAULT_DERIVATION_PATH
from .exceptions import (
    AddressMismatch,
    ConfigurationError,
    DeviceError,
    DeviceLocked,
    DeviceNotFound,
    UserRejected,
)
from .util import to_checksum_address

if TYPE_CHECKING:
    from eth_account.signers.local import LocalAccount
    from eth_account.types import TransactionDictType
    from eth_typing import ChecksumAddress
    from web3.types import TxParams


logger = logging.getLogger(__name__)
status = make_status_logger(logger)


class Signer(Protocol):
    address: "ChecksumAddress"

    def sign_transaction(self, params: "TxParams") -> HexBytes:
        """Return the raw signed transaction bytes."""
        ...


class SoftwareSigner:
    account: "LocalAccount"

    def __init__(self, account: "LocalAccount", source: str = "private key"):
        self.account = account
        self.address = account.address
        self.source = source

    @classmethod
    def from_keyfile(
        cls, keyfile: str, password: Optional[str] = None
    ) -> "SoftwareSigner":
        from eth_account import Account

        if password is None:
            password = getpass(prompt=f"[{keyfile}] password: ", stream=sys.stderr)
        with status("Decrypting keyfile..."):
            with click.open_file(keyfile) as kf:
                keydata = kf.read()
            privkey = Account.decrypt(keydata, password=password)
        return cls(Account.from_key(privkey), source=f"keyfile: {keyfile}")

    @classmethod
    def from_private_key(cls, private_key: str | bytes) -> "SoftwareSigner":
        from eth_account import Account

        return cls(Account.from_key(private_key))

    def __repr__(self):
        return self.source

    def sign_transaction(self, params: "TxParams") -> HexBytes:
        with status("Signing Web3 transaction..."):
            signed = self.account.sign_transaction(cast("TransactionDictType", params))
        return HexBytes(signed.raw_transaction)


class DeviceSession(Protocol):
    def connect(self) -> None: ...

    def get_address(self) -> str: ...

    def sign(self, params: "TxParams") -> tuple[int, int, int]:
        """Sign on the device and return (v, r, s).

        Blocks until the user confirms or rejects on the device.
        """
        ...


class TrezorSession:
    def __init__(self, derivation_path: str = DEFAULT_DERIVATION_PATH):
        self.derivation_path = derivation_path
        self.client: Any = None

    def __repr__(self):
        return f"trezor: {self.derivation_path}"

    def connect(self) -> None:
        from trezorlib.client import get_default_client
        from trezorlib.exceptions import PinException
        from trezorlib.transport import DeviceIsBusy, TransportException

        try:
            self.client = get_default_client()
        except (DeviceIsBusy, PinException) as exc:
            raise DeviceLocked(f"Trezor is locked or busy: {exc}") from exc
        except TransportException as exc:
            raise DeviceNotFound(f"No Trezor device found: {exc}") from exc

    def get_address(self) -> str:
        from trezorlib import ethereum, tools

        with _trezor_errors():
            return ethereum.get_address(
                self.client, tools.parse_path(self.derivation_path)
            )

    def sign(self, params: "TxParams") -> tuple[int, int, int]:
        from trezorlib import ethereum, tools

        assert "to" in params and "data" in params
        with _trezor_errors():
            v, r, s = ethereum.sign_tx_eip1559(
                self.client,
                tools.parse_path(self.derivation_path),
                nonce=int(params["nonce"]),
                gas_limit=int(params["gas"]),
                to=str(params["to"]),
                value=int(params["value"]),
                data=bytes(HexBytes(params["data"])),
                chain_id=int(params["chainId"]),
                max_gas_fee=int(params["maxFeePerGas"]),
                max_priority_fee=int(params["maxPriorityFeePerGas"]),
            )
        return v, int.from_bytes(r, "big"), int.from_bytes(s, "big")


@contextmanager
def _trezor_errors():
    from trezorlib.exceptions import Cancelled, PinException, TrezorFailure
    from trezorlib.messages import FailureType
    from trezorlib.transport import TransportException

    try:
        yield
    except Cancelled as exc:
        raise UserRejected("Rejected on Trezor device.") from exc
    except PinException as exc:
        raise DeviceLocked(f"Trezor PIN error: {exc}") from exc
    except TrezorFailure as exc:
        if exc.code == FailureType.ActionCancelled:
            raise UserRejected("Rejected on Trezor device.") from exc
        raise DeviceError(f"Trezor failure: {exc}") from exc
    except TransportException as exc:
        raise DeviceError(f"Trezor connection lost: {exc}") from exc


class LedgerSession:
    """Ledger device running the Ethereum app."""

    def __init__(self, derivation_path: str = DEFAULT_DERIVATION_PATH):
        self.derivation_path = derivation_path
        self.dongle: Any = None

    def __repr__(self):
        return f"ledger: {self.derivation_path}"

    def connect(self) -> None:
        from ledgereth.comms import init_dongle

        with _ledger_errors():
            self.dongle = init_dongle()

    def get_address(self) -> str:
        from ledgereth.accounts import get_account_by_path

        with _ledger_errors():
            account = get_account_by_path(self.derivation_path, dongle=self.dongle)
        return account.address

    def sign(self, params: "TxParams") -> tuple[int, int, int]:
        from ledgereth.transactions import create_transaction

        assert "to" in params and "data" in params
        with _ledger_errors():
            signed = create_transaction(
                destination=bytes(HexBytes(str(params["to"]))),
                amount=int(params["value"]),
                gas=int(params["gas"]),
                nonce=int(params["nonce"]),
                data=bytes(HexBytes(params["data"])),
                max_priority_fee_per_gas=int(params["maxPriorityFeePerGas"]),
                max_fee_per_gas=int(params["maxFeePerGas"]),
                chain_id=int(params["chainId"]),
                sender_path=self.derivation_path,
                dongle=self.dongle,
            )
        return signed.y_parity, signed.sender_r, signed.sender_s


@contextmanager
def _ledger_errors():
    from ledgereth.exceptions import (
        LedgerAppNotOpened,
        LedgerCancel,
        LedgerError,
        LedgerLocked,
        LedgerNotFound,
    )

    try:
        yield
    except LedgerCancel as exc:
        raise UserRejected("Rejected on Ledger device.") from exc
    except (LedgerLocked, LedgerAppNotOpened) as exc:
        raise DeviceLocked(
            "Ledger is locked or the Ethereum app is not open."
        ) from exc
    except LedgerNotFound as exc:
        raise DeviceNotFound("No Ledger device found.") from exc
    except LedgerError as exc:
        raise DeviceError(f"Ledger failure: {exc}") from exc


class HardwareSigner:
    def __init__(self, session: DeviceSession):
        self.session = session
        with status("Connecting to hardware wallet..."):
            session.connect()
            self.address = to_checksum_address(session.get_address())

    def __repr__(self):
        return repr(self.session)

    def sign_transaction(self, params: "TxParams") -> HexBytes:
        from eth_account._utils.legacy_transactions import (  # pyright: ignore[reportPrivateUsage]
            encode_transaction,
            serializable_unsigned_transaction_from_dict,
        )

        with status("Please confirm the transaction on your device..."):
            v, r, s = self.session.sign(params)
        unsigned = serializable_unsigned_transaction_from_dict(
            cast("TransactionDictType", dict(params))
        )
        return HexBytes(encode_transaction(unsigned, vrs=(v, r, s)))


class SignerBackend(Enum):
    KEYFILE = "keyfile"
    PRIVATE_KEY = "private-key"
    TREZOR = "trezor"
    LEDGER = "ledger"


@dataclasses.dataclass(frozen=True, kw_only=True)
class SignerConfig:
    backend: SignerBackend
    keyfile: Optional[str] = None
    private_key: Optional[str] = dataclasses.field(default=None, repr=False)
    derivation_path: str = DEFAULT_DERIVATION_PATH
    expected_address: Optional[str] = None


def derivation_path(account: str) -> str:
    """Accept either a full BIP32 path or a bare account index."""
    if account.isdigit():
        return f"m/44'/60'/0'/0/{account}"
    return account


def get_signer(config: SignerConfig) -> Signer:
    if config.backend is SignerBackend.KEYFILE:
        if config.keyfile is None:
            raise ConfigurationError("No keyfile supplied.")
        signer: Signer = SoftwareSigner.from_keyfile(config.keyfile)
    elif config.backend is SignerBackend.PRIVATE_KEY:
        if config.private_key is None:
            raise ConfigurationError("No private key supplied.")
        signer = SoftwareSigner.from_private_key(config.private_key)
    elif config.backend is SignerBackend.TREZOR:
        signer = HardwareSigner(TrezorSession(config.derivation_path))
    elif config.backend is SignerBackend.LEDGER:
        signer = HardwareSigner(LedgerSession(config.derivation_path))
    else:
        raise ConfigurationError(f"Unsupported signer backend {config.backend}.")
    if (
        config.expected_address is not None
        and signer.address != to_checksum_address(config.expected_address)
    ):
        raise AddressMismatch(config.expected_address, signer.address)
    logger.info(f"Using signer: {signer} ({signer.address})")
    return signer
