"""Chain query interface consumed by the deployment pipeline."""

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Mapping, Optional, Protocol, cast

from hexbytes import HexBytes

from .exceptions import ChainError
from .models import Web3TxOptions
from .util import make_web3tx

if TYPE_CHECKING:
    from eth_typing import URI, ChecksumAddress
    from web3 import Web3
    from web3.types import TxParams, Wei

logger = logging.getLogger(__name__)

Receipt = Mapping[str, Any]


class Chain(Protocol):
    @property
    def chain_id(self) -> int: ...

    def get_code(self, address: "ChecksumAddress") -> bytes: ...

    def call(self, address: "ChecksumAddress", data: bytes) -> bytes: ...

    def prepare_transaction(
        self,
        *,
        from_: "ChecksumAddress",
        to: "ChecksumAddress",
        data: bytes,
        value: int = 0,
    ) -> "TxParams": ...

    def submit_transaction(self, raw_transaction: bytes) -> Receipt:
        """Broadcast a signed transaction and block until it is included."""
        ...


class Web3Chain:
    def __init__(self, w3: "Web3", txopts: Optional[Web3TxOptions] = None):
        self.w3 = w3
        self.txopts = txopts if txopts is not None else Web3TxOptions()
        self._chain_id: Optional[int] = None

    @classmethod
    def from_uri(cls, rpc: str, txopts: Optional[Web3TxOptions] = None) -> "Web3Chain":
        from web3 import Web3
        from web3.providers.auto import load_provider_from_uri

        return cls(Web3(load_provider_from_uri(cast("URI", rpc))), txopts)

    def __repr__(self):
        return f"Web3Chain(chain_id={self._chain_id})"

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            with _chain_errors("eth_chainId"):
                self._chain_id = self.w3.eth.chain_id
        return self._chain_id

    def get_code(self, address: "ChecksumAddress") -> bytes:
        with _chain_errors(f"eth_getCode({address})"):
            return bytes(self.w3.eth.get_code(address, block_identifier="latest"))

    def get_balance(self, address: "ChecksumAddress") -> int:
        with _chain_errors(f"eth_getBalance({address})"):
            return self.w3.eth.get_balance(address)

    def call(self, address: "ChecksumAddress", data: bytes) -> bytes:
        with _chain_errors(f"eth_call({address})"):
            return bytes(
                self.w3.eth.call({"to": address, "data": HexBytes(data)}, "latest")
            )

    def prepare_transaction(
        self,
        *,
        from_: "ChecksumAddress",
        to: "ChecksumAddress",
        data: bytes,
        value: int = 0,
    ) -> "TxParams":
        txopts = self.txopts._replace(chain_id=self.chain_id)
        with _chain_errors("transaction preparation"):
            return make_web3tx(
                self.w3,
                from_=from_,
                to=to,
                txopts=txopts,
                data=HexBytes(data),
                value=cast("Wei", value),
            )

    def submit_transaction(self, raw_transaction: bytes) -> Receipt:
        with _chain_errors("eth_sendRawTransaction"):
            tx_hash = self.w3.eth.send_raw_transaction(raw_transaction)
        logger.info(f"Sent transaction {tx_hash.to_0x_hex()}")
        with _chain_errors(f"receipt of {tx_hash.to_0x_hex()}"):
            return self.w3.eth.wait_for_transaction_receipt(tx_hash)


@contextmanager
def _chain_errors(what: str):
    """Wrap provider failures in ChainError."""
    from web3.exceptions import Web3Exception

    try:
        yield
    except (Web3Exception, OSError, ValueError) as exc:
        raise ChainError(f"{what} failed: {exc}") from exc
