"""Deterministic salt derivation and CREATE2 address prediction.

Both functions are pure: equal inputs give equal outputs on every machine and
every chain. A wrong address here means funds sent to nowhere, so the
prediction is checked against the EIP-1014 reference vectors in the tests.
"""

import logging
from typing import TYPE_CHECKING, cast

from hexbytes import HexBytes

from .constants import DETERMINISTIC_DEPLOYER_ADDRESS
from .exceptions import DerivationError, InvalidCreationCode

if TYPE_CHECKING:
    from eth_typing import ChecksumAddress, HexStr

logger = logging.getLogger(__name__)

UINT256_MAX = 2**256 - 1


def derive_salt(namespace: str, chain_id: int, nonce: int) -> HexBytes:
    """Derive a 32-byte CREATE2 salt.

    salt = keccak256(abi.encodePacked(namespace, uint256(chainId), uint256(nonce)))

    Both integers are packed as fixed-width uint256, so no two input triples
    share a preimage once the namespace is fixed.
    """
    from eth_abi.packed import encode_packed
    from eth_utils.crypto import keccak

    if not isinstance(namespace, str):
        raise DerivationError(f"Namespace must be a string, got {type(namespace)}.")
    for label, value in (("chain ID", chain_id), ("nonce", nonce)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise DerivationError(f"The {label} must be an integer, got {value!r}.")
        if not 0 <= value <= UINT256_MAX:
            raise DerivationError(f"The {label} {value} does not fit in a uint256.")
    preimage = encode_packed(
        ("string", "uint256", "uint256"),
        (namespace, chain_id, nonce),
    )
    return HexBytes(keccak(preimage))


def salt_to_uint(salt: bytes) -> int:
    return int.from_bytes(salt, byteorder="big")


def creation_code_hash(creation_code: bytes) -> HexBytes:
    from eth_utils.crypto import keccak

    if len(creation_code) == 0:
        raise InvalidCreationCode()
    return HexBytes(keccak(creation_code))


def runtime_code_hash(runtime_code: bytes) -> HexBytes:
    """Hash of code as it exists on chain after deployment."""
    from eth_utils.crypto import keccak

    return HexBytes(keccak(runtime_code))


def predict_address(
    factory: str, salt: bytes, creation_code: bytes
) -> "ChecksumAddress":
    """Compute the CREATE2 address.

    address = keccak256(0xff ++ factory ++ salt ++ keccak256(creationCode))[12:]
    """
    from eth_utils.address import is_address
    from web3.utils.address import get_create2_address

    if len(creation_code) == 0:
        raise InvalidCreationCode()
    if len(salt) != 32:
        raise DerivationError(f"Salt must be 32 bytes, got {len(salt)}.")
    if not is_address(factory):
        raise DerivationError(f"Invalid factory address '{factory}'.")
    address = get_create2_address(
        cast("ChecksumAddress", factory),
        cast("HexStr", HexBytes(salt).to_0x_hex()),
        cast("HexStr", HexBytes(creation_code).to_0x_hex()),
    )
    logger.debug(f"Predicted {address} for salt {HexBytes(salt).to_0x_hex()}")
    return address


def predict_factory_address(
    factory_creation_code: bytes, salt: bytes
) -> "ChecksumAddress":
    """Address of a factory deployed through the deterministic deployment proxy."""
    return predict_address(DETERMINISTIC_DEPLOYER_ADDRESS, salt, factory_creation_code)
