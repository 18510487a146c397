import logging
from datetime import datetime, timezone
from decimal import Decimal, localcontext
from typing import (
    TYPE_CHECKING,
    Any,
    Optional,
    Sequence,
    cast,
)

from eth_abi.exceptions import DecodingError, EncodingError, ParseError
from hexbytes import (
    HexBytes,
)

from .constants import SAFE_SETUP_FUNC_SELECTOR, SAFE_SETUP_FUNC_TYPES
from .models import Web3TxOptions

if TYPE_CHECKING:
    from eth_typing import ChecksumAddress, HexStr
    from web3 import Web3
    from web3.types import Nonce, TxParams, Wei

logger = logging.getLogger(__name__)

# Values or return data that do not fit their ABI types.
ABI_CODING_ERRORS = (EncodingError, DecodingError)
# Additionally raised for malformed or unknown ABI type strings.
ABI_ERRORS = (*ABI_CODING_ERRORS, ParseError, ValueError, TypeError)


def compute_safe_address(
    *,
    chain_id: Optional[int],
    fallback: "ChecksumAddress",
    owners: Sequence["ChecksumAddress"],
    proxy_factory: "ChecksumAddress",
    salt_nonce: int,
    singleton: "ChecksumAddress",
    threshold: int,
) -> tuple[HexBytes, "ChecksumAddress"]:
    """Compute Safe address via SafeProxyFactory v1.4.1."""
    from eth_abi.abi import encode as abi_encode
    from eth_abi.packed import encode_packed
    from eth_utils.crypto import keccak
    from safe_eth.eth.contracts import load_contract_interface
    from web3.constants import ADDRESS_ZERO
    from web3.utils.address import get_create2_address

    initializer_args = abi_encode(
        SAFE_SETUP_FUNC_TYPES,
        (
            list(owners),
            threshold,
            ADDRESS_ZERO,
            b"",
            fallback,
            ADDRESS_ZERO,
            0,
            ADDRESS_ZERO,
        ),
    )
    initializer = HexBytes(HexBytes(SAFE_SETUP_FUNC_SELECTOR) + initializer_args)
    if chain_id is None:
        # bytes32 salt = keccak256(abi.encodePacked(keccak256(initializer), saltNonce));
        salt_preimage = encode_packed(
            ("bytes32", "uint256"),
            (keccak(initializer), salt_nonce),
        )
    else:
        # bytes32 salt = keccak256(abi.encodePacked(keccak256(initializer), saltNonce, getChainId()));
        salt_preimage = encode_packed(
            ("bytes32", "uint256", "uint256"),
            (keccak(initializer), salt_nonce, chain_id),
        )
    salt = keccak(salt_preimage)

    bytecode = HexBytes(load_contract_interface("Proxy_V1_4_1.json")["bytecode"])
    deployment_data = encode_packed(
        ["bytes", "uint256"], [bytecode, int(singleton, 16)]
    )
    address = get_create2_address(
        proxy_factory,
        cast("HexStr", salt.hex()),
        cast("HexStr", deployment_data.hex()),
    )
    return (initializer, address)


def function_types(signature: str) -> tuple[str, ...]:
    """Argument types of a signature such as 'foo(address,(uint256,bool))'."""
    start, end = signature.find("("), signature.rfind(")")
    if start < 1 or end != len(signature) - 1:
        raise ValueError(f"Invalid function signature '{signature}'.")
    inner = signature[start + 1 : end]
    types: list[str] = []
    depth, current = 0, ""
    for char in inner:
        if char == "," and depth == 0:
            types.append(current)
            current = ""
            continue
        depth += {"(": 1, ")": -1}.get(char, 0)
        current += char
    if current:
        types.append(current)
    return tuple(types)


def encode_call(signature: str, args: Sequence[Any] = ()) -> HexBytes:
    from eth_abi.abi import encode as abi_encode
    from eth_utils.abi import function_signature_to_4byte_selector

    selector = function_signature_to_4byte_selector(signature)
    return HexBytes(selector + abi_encode(function_types(signature), list(args)))


def decode_result(types: Sequence[str], data: bytes) -> tuple[Any, ...]:
    from eth_abi.abi import decode as abi_decode

    return tuple(abi_decode(list(types), data))


def format_native_value(value: "Wei", symbol: str = "ETH", decimals: int = 18) -> str:
    with localcontext() as ctx:
        ctx.prec = 78
        converted = Decimal(value).scaleb(-decimals).normalize()
    return f"{converted:,f} {symbol}"


def format_timestamp(when: Optional[datetime] = None) -> str:
    if when is None:
        when = datetime.now(tz=timezone.utc)
    return when.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def hexbytes_json_encoder(obj: Any):
    if isinstance(obj, HexBytes):
        return obj.to_0x_hex()
    raise TypeError(f"Cannot serialize object of {type(obj)}")


def make_web3tx(
    w3: "Web3",
    *,
    from_: "ChecksumAddress",
    to: "ChecksumAddress",
    txopts: Web3TxOptions,
    data: "bytes | HexStr",
    value: "Wei",
) -> "TxParams":
    from web3.types import TxParams

    chain_id = txopts.chain_id if txopts.chain_id is not None else w3.eth.chain_id
    if (gas_limit := txopts.gas_limit) is None:
        gas_limit = w3.eth.estimate_gas(
            {"from": from_, "to": to, "data": data, "value": value}
        )
    if (nonce := txopts.nonce) is None:
        nonce = w3.eth.get_transaction_count(from_, block_identifier="pending")
    if (max_pri_fee := txopts.max_pri_fee) is None:
        max_pri_fee = w3.eth.max_priority_fee
    if (max_fee := txopts.max_fee) is None:
        block = w3.eth.get_block("latest")
        assert "baseFeePerGas" in block
        max_fee = (2 * block["baseFeePerGas"]) + max_pri_fee
    tx = TxParams(
        type=2,
        to=to,
        chainId=chain_id,
        gas=gas_limit,
        nonce=cast("Nonce", nonce),
        maxFeePerGas=cast("Wei", max_fee),
        maxPriorityFeePerGas=cast("Wei", max_pri_fee),
        data=data,
        value=value,
    )
    logger.info(f"Created Web3Tx: {tx}")
    return tx


def to_checksum_address(address: str) -> "ChecksumAddress":
    from eth_utils.address import to_checksum_address

    return to_checksum_address(address)
