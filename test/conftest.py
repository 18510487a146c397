from typing import Any, Callable, Optional

import pytest
from eth_abi.abi import decode as abi_decode
from eth_abi.abi import encode as abi_encode
from eth_account import Account
from eth_account.typed_transactions import TypedTransaction
from eth_utils.abi import function_signature_to_4byte_selector
from eth_utils.address import to_checksum_address
from eth_utils.crypto import keccak
from hexbytes import HexBytes
from web3.utils.address import get_create2_address

from xdeploy.auth import SoftwareSigner
from xdeploy.constants import (
    CREATE_CHAIN_SPECIFIC_PROXY_FUNC,
    CREATE_PROXY_FUNC,
    DEFAULT_PROXYFACTORY_ADDRESS,
    DETERMINISTIC_DEPLOYER_ADDRESS,
    FACTORY_DEPLOY_FUNC,
    FACTORY_SALT_USED_FUNC,
    SAFE_GET_OWNERS_FUNC,
    SAFE_GET_THRESHOLD_FUNC,
    SAFE_IS_OWNER_FUNC,
    SAFE_SETUP_FUNC_TYPES,
)
from xdeploy.exceptions import ChainError
from xdeploy.util import compute_safe_address

DEPLOYER_KEY = "0x" + "11" * 32
OTHER_KEY = "0x" + "22" * 32

FACTORY_CODE = HexBytes(b"\x60\x80" + b"create2-factory")

# Setters understood by every contract deployed on FakeChain, mapped to the
# getter that reads the value back.
SETTERS = {
    "setSupportedToken(address,bool)": "supportedTokens(address)",
    "setApprovedBridge(address,bool)": "approvedBridges(address)",
}


def selector(signature: str) -> bytes:
    return function_signature_to_4byte_selector(signature)


def runtime_code(creation_code: bytes) -> bytes:
    # Runtime code differs from creation code, like on a real chain.
    return b"\xfe" + keccak(creation_code)


class FakeChain:
    """In-memory chain executing real signed transactions.

    Emulates the deterministic deployment proxy, any number of CREATE2
    factories, the Safe v1.4.1 proxy factory and a router-like contract
    interface that every deployed contract answers to.
    """

    def __init__(self, chain_id: int = 8453):
        self._chain_id = chain_id
        self.code: dict[str, bytes] = {}
        self.factories: dict[str, set[bytes]] = {}
        self.safes: dict[str, tuple[list[str], int]] = {}
        self.storage: dict[str, dict[tuple[str, str], bool]] = {}
        self.nonces: dict[str, int] = {}
        self.block_number = 100
        self.transactions: list[dict[str, Any]] = []
        # Called with (to, data) before a transaction executes; return True to
        # simulate a dropped connection.
        self.fail_when: Optional[Callable[[str, bytes], bool]] = None
        self.code[DETERMINISTIC_DEPLOYER_ADDRESS] = b"\xfe"
        self.code[to_checksum_address(DEFAULT_PROXYFACTORY_ADDRESS)] = b"\xfe"

    @property
    def chain_id(self) -> int:
        return self._chain_id

    # Setup helpers

    def install_factory(self, address: str) -> str:
        address = to_checksum_address(address)
        self.code[address] = runtime_code(FACTORY_CODE)
        self.factories[address] = set()
        return address

    def install_code(self, address: str, code: bytes) -> None:
        self.code[to_checksum_address(address)] = code

    def mark_salt_used(self, factory: str, salt: bytes) -> None:
        self.factories[to_checksum_address(factory)].add(bytes(salt))

    def setter_calls(self, address: Optional[str] = None) -> list[dict[str, Any]]:
        return [
            tx
            for tx in self.transactions
            if tx["data"][:4] in [selector(s) for s in SETTERS]
            and (address is None or tx["to"] == to_checksum_address(address))
        ]

    # Chain protocol

    def get_balance(self, address: str) -> int:
        return 10**18

    def get_code(self, address: str) -> bytes:
        return self.code.get(to_checksum_address(address), b"")

    def call(self, address: str, data: bytes) -> bytes:
        address = to_checksum_address(address)
        data = bytes(data)
        if address in self.factories and data[:4] == selector(FACTORY_SALT_USED_FUNC):
            (salt,) = abi_decode(["bytes32"], data[4:])
            return abi_encode(["bool"], [salt in self.factories[address]])
        if address in self.safes:
            owners, threshold = self.safes[address]
            if data[:4] == selector(SAFE_GET_OWNERS_FUNC):
                return abi_encode(["address[]"], [owners])
            if data[:4] == selector(SAFE_GET_THRESHOLD_FUNC):
                return abi_encode(["uint256"], [threshold])
            if data[:4] == selector(SAFE_IS_OWNER_FUNC):
                (who,) = abi_decode(["address"], data[4:])
                return abi_encode(["bool"], [to_checksum_address(who) in owners])
        for getter in SETTERS.values():
            if data[:4] == selector(getter):
                (key,) = abi_decode(["address"], data[4:])
                value = self.storage.get(address, {}).get((getter, key.lower()), False)
                return abi_encode(["bool"], [value])
        raise ChainError(f"eth_call({address}) failed: execution reverted")

    def prepare_transaction(
        self, *, from_: str, to: str, data: bytes, value: int = 0
    ) -> dict[str, Any]:
        return {
            "type": 2,
            "chainId": self.chain_id,
            "nonce": self.nonces.get(from_, 0),
            "gas": 1_000_000,
            "maxFeePerGas": 2_000_000_000,
            "maxPriorityFeePerGas": 1_000_000_000,
            "to": to,
            "value": value,
            "data": HexBytes(data),
        }

    def submit_transaction(self, raw_transaction: bytes) -> dict[str, Any]:
        tx = TypedTransaction.from_bytes(HexBytes(raw_transaction)).as_dict()
        sender = Account.recover_transaction(raw_transaction)
        to = to_checksum_address(tx["to"])
        data = bytes(tx["data"])
        if self.fail_when is not None and self.fail_when(to, data):
            raise ChainError("eth_sendRawTransaction failed: connection reset")
        assert tx["chainId"] == self.chain_id
        assert tx["nonce"] == self.nonces.get(sender, 0)
        self.nonces[sender] = tx["nonce"] + 1
        self.block_number += 1
        self.transactions.append({"from": sender, "to": to, "data": data})
        ok = self._execute(to, data)
        return {
            "transactionHash": HexBytes(keccak(raw_transaction)),
            "blockNumber": self.block_number,
            "status": 1 if ok else 0,
        }

    # Execution

    def _create2(self, deployer: str, salt: bytes, code: bytes) -> Optional[str]:
        address = get_create2_address(
            deployer, HexBytes(salt).to_0x_hex(), HexBytes(code).to_0x_hex()
        )
        if len(code) == 0 or address in self.code:
            return None
        self.code[address] = runtime_code(code)
        return address

    def _execute(self, to: str, data: bytes) -> bool:
        if to == DETERMINISTIC_DEPLOYER_ADDRESS:
            address = self._create2(to, data[:32], data[32:])
            if address is not None and data[32:] == FACTORY_CODE:
                self.factories[address] = set()
            return address is not None
        if to in self.factories:
            if data[:4] != selector(FACTORY_DEPLOY_FUNC):
                return False
            code, salt = abi_decode(["bytes", "bytes32"], data[4:])
            if salt in self.factories[to] or len(code) == 0:
                return False
            if self._create2(to, salt, code) is None:
                return False
            self.factories[to].add(salt)
            return True
        if to == to_checksum_address(DEFAULT_PROXYFACTORY_ADDRESS):
            return self._create_safe(to, data)
        if to in self.code:
            for setter, getter in SETTERS.items():
                if data[:4] == selector(setter):
                    key, value = abi_decode(["address", "bool"], data[4:])
                    self.storage.setdefault(to, {})[(getter, key.lower())] = value
                    return True
        return False

    def _create_safe(self, factory: str, data: bytes) -> bool:
        if data[:4] == selector(CREATE_PROXY_FUNC):
            chain_id = None
        elif data[:4] == selector(CREATE_CHAIN_SPECIFIC_PROXY_FUNC):
            chain_id = self.chain_id
        else:
            return False
        singleton, initializer, salt_nonce = abi_decode(
            ["address", "bytes", "uint256"], data[4:]
        )
        owners, threshold, _, _, fallback, _, _, _ = abi_decode(
            list(SAFE_SETUP_FUNC_TYPES), initializer[4:]
        )
        _, address = compute_safe_address(
            chain_id=chain_id,
            fallback=to_checksum_address(fallback),
            owners=[to_checksum_address(o) for o in owners],
            proxy_factory=factory,
            salt_nonce=salt_nonce,
            singleton=to_checksum_address(singleton),
            threshold=threshold,
        )
        if address in self.code:
            return False
        self.code[address] = b"\xfe" + b"safe-proxy"
        self.safes[address] = ([to_checksum_address(o) for o in owners], threshold)
        return True


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def signer() -> SoftwareSigner:
    return SoftwareSigner.from_private_key(DEPLOYER_KEY)


@pytest.fixture
def other_signer() -> SoftwareSigner:
    return SoftwareSigner.from_private_key(OTHER_KEY)


@pytest.fixture
def factory_address(chain: FakeChain) -> str:
    return chain.install_factory("0x" + "f1" * 20)
