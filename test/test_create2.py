import pytest
from hexbytes import HexBytes

from xdeploy.constants import DETERMINISTIC_DEPLOYER_ADDRESS
from xdeploy.create2 import (
    UINT256_MAX,
    creation_code_hash,
    derive_salt,
    predict_address,
    predict_factory_address,
    runtime_code_hash,
    salt_to_uint,
)
from xdeploy.exceptions import DerivationError, InvalidCreationCode

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
DEADBEEF_PREFIX = "0xdeadbeef00000000000000000000000000000000"
DEADBEEF_SUFFIX = "0x00000000000000000000000000000000deadbeef"
ZERO_SALT = bytes(32)

# https://eips.ethereum.org/EIPS/eip-1014#examples
EIP1014_VECTORS = [
    (ZERO_ADDRESS, ZERO_SALT, "0x00", "0x4D1A2e2bB4F88F0250f26Ffff098B0b30B26BF38"),
    (DEADBEEF_PREFIX, ZERO_SALT, "0x00", "0xB928f69Bb1D91Cd65274e3c79d8986362984fDA3"),
    (
        DEADBEEF_PREFIX,
        HexBytes("0x000000000000000000000000feed000000000000000000000000000000000000"),
        "0x00",
        "0xD04116cDd17beBE565EB2422F2497E06cC1C9833",
    ),
    (
        ZERO_ADDRESS,
        ZERO_SALT,
        "0xdeadbeef",
        "0x70f2b2914A2a4b783FaEFb75f459A580616Fcb5e",
    ),
    (
        DEADBEEF_SUFFIX,
        HexBytes("0x00000000000000000000000000000000000000000000000000000000cafebabe"),
        "0xdeadbeef",
        "0x60f3f640a8508fC6a86d45DF051962668E1e8AC7",
    ),
    (
        DEADBEEF_SUFFIX,
        HexBytes("0x00000000000000000000000000000000000000000000000000000000cafebabe"),
        "0x" + "deadbeef" * 11,
        "0x1d8bfDC5D46DC4f61D6b6115972536eBE6A8854C",
    ),
]


@pytest.mark.parametrize("factory,salt,code,expected", EIP1014_VECTORS)
def test_predict_address_eip1014(factory, salt, code, expected):
    assert predict_address(factory, salt, HexBytes(code)) == expected


def test_predict_address_rejects_empty_code():
    # The last EIP-1014 example uses empty init code, which is never deployable.
    with pytest.raises(InvalidCreationCode):
        predict_address(ZERO_ADDRESS, ZERO_SALT, b"")


def test_predict_address_rejects_short_salt():
    with pytest.raises(DerivationError):
        predict_address(ZERO_ADDRESS, b"\x00" * 31, b"\x00")


def test_predict_address_rejects_bad_factory():
    with pytest.raises(DerivationError):
        predict_address("0x1234", ZERO_SALT, b"\x00")


def test_predict_address_depends_on_code():
    a = predict_address(DEADBEEF_PREFIX, ZERO_SALT, b"\x01")
    b = predict_address(DEADBEEF_PREFIX, ZERO_SALT, b"\x02")
    assert a != b


def test_predict_factory_address():
    salt = derive_salt("factory", 0, 0)
    assert predict_factory_address(b"\x60\x80", salt) == predict_address(
        DETERMINISTIC_DEPLOYER_ADDRESS, salt, b"\x60\x80"
    )


def test_derive_salt_is_deterministic():
    salt = derive_salt("402.vln.gg-v1-router", 8453, 0)
    assert len(salt) == 32
    assert salt == derive_salt("402.vln.gg-v1-router", 8453, 0)


def test_derive_salt_matches_packed_encoding():
    from eth_utils.crypto import keccak

    preimage = (
        b"ns"
        + (1).to_bytes(32, "big")
        + (2).to_bytes(32, "big")
    )
    assert derive_salt("ns", 1, 2) == keccak(preimage)


def test_derive_salt_separates_inputs():
    salts = {
        derive_salt("ns", 1, 0),
        derive_salt("ns", 2, 0),
        derive_salt("ns", 1, 1),
        derive_salt("ns2", 1, 0),
        derive_salt("ns", 0, 1),
    }
    assert len(salts) == 5


def test_derive_salt_accepts_bounds():
    derive_salt("", 0, 0)
    derive_salt("ns", UINT256_MAX, UINT256_MAX)


@pytest.mark.parametrize(
    "chain_id,nonce",
    [(-1, 0), (0, -1), (UINT256_MAX + 1, 0), (True, 0), ("1", 0)],
)
def test_derive_salt_rejects_bad_integers(chain_id, nonce):
    with pytest.raises(DerivationError):
        derive_salt("ns", chain_id, nonce)


def test_derive_salt_rejects_non_string_namespace():
    with pytest.raises(DerivationError):
        derive_salt(b"ns", 0, 0)  # pyright: ignore[reportArgumentType]


def test_code_hashes():
    assert creation_code_hash(b"\x00") == runtime_code_hash(b"\x00")
    assert runtime_code_hash(b"") == HexBytes(
        "0xc5d2460186f7233c927e7db2dcc703c0e500b653ca82273b7bfad8045d85a470"
    )
    with pytest.raises(InvalidCreationCode):
        creation_code_hash(b"")


def test_salt_to_uint():
    assert salt_to_uint(bytes(31) + b"\x05") == 5
