from datetime import datetime, timezone

import pytest
from eth_utils.abi import function_signature_to_4byte_selector

from xdeploy.util import (
    decode_result,
    encode_call,
    format_native_value,
    format_timestamp,
    function_types,
)


def test_function_types():
    assert function_types("pause()") == ()
    assert function_types("setFeeRate(uint256)") == ("uint256",)
    assert function_types("f(address,(uint256,bool),bytes32[])") == (
        "address",
        "(uint256,bool)",
        "bytes32[]",
    )
    with pytest.raises(ValueError):
        function_types("noparens")


def test_encode_call():
    data = encode_call("setFeeRate(uint256)", [50])
    assert data[:4] == function_signature_to_4byte_selector("setFeeRate(uint256)")
    assert data[4:] == (50).to_bytes(32, "big")
    assert decode_result(["uint256"], data[4:]) == (50,)


def test_format_native_value():
    assert format_native_value(10**18) == "1 ETH"
    assert format_native_value(1234 * 10**15) == "1.234 ETH"
    assert format_native_value(5, symbol="WEI", decimals=0) == "5 WEI"


def test_format_timestamp():
    when = datetime(2025, 1, 2, 3, 4, 5, 678000, tzinfo=timezone.utc)
    assert format_timestamp(when) == "2025-01-02T03:04:05.678Z"
    assert format_timestamp().endswith("Z")
