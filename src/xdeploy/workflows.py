"""Common logic for command implementations."""

import json
import logging
from typing import (
    TYPE_CHECKING,
    Any,
    Mapping,
    Optional,
    cast,
)

import click
from hexbytes import (
    HexBytes,
)

from .console import make_status_logger
from .constants import (
    DEFAULT_FALLBACK_ADDRESS,
    DEFAULT_PROXYFACTORY_ADDRESS,
    DEFAULT_SAFE_SINGLETON_ADDRESS,
    DEFAULT_SAFEL2_SINGLETON_ADDRESS,
)
from .exceptions import TransactionReverted
from .models import SafeDeployParams, SafeVariant
from .util import hexbytes_json_encoder, to_checksum_address

if TYPE_CHECKING:
    from eth_typing import ChecksumAddress

    from .auth import Signer
    from .chain import Chain, Receipt

logger = logging.getLogger(__name__)
status = make_status_logger(logger)


def execute_transaction(
    chain: "Chain",
    signer: "Signer",
    *,
    to: "ChecksumAddress",
    data: bytes,
    value: int = 0,
) -> "Receipt":
    """Sign, broadcast and wait for a transaction.

    Raises TransactionReverted when the receipt reports failure, so callers
    never have to inspect the receipt status themselves.
    """
    with status("Building Web3 transaction..."):
        tx = chain.prepare_transaction(
            from_=signer.address, to=to, data=data, value=value
        )
    raw_tx = signer.sign_transaction(tx)
    with status("Waiting for Web3 transaction receipt..."):
        receipt = chain.submit_transaction(raw_tx)
    logger.info(
        f"Web3Tx Receipt: {json.dumps(dict(receipt), default=_receipt_json_encoder)}"
    )
    if receipt.get("status") != 1:
        raise TransactionReverted(HexBytes(receipt["transactionHash"]))
    return receipt


def _receipt_json_encoder(obj: Any):
    if isinstance(obj, Mapping):
        return dict(cast("Mapping[str, Any]", obj))
    if isinstance(obj, bytes):
        return hexbytes_json_encoder(HexBytes(obj))
    return hexbytes_json_encoder(obj)


def validate_safe_deploy_options(
    *,
    chain_id: Optional[int],
    chain_specific: bool,
    custom_proxy_factory: Optional[str],
    custom_singleton: Optional[str],
    fallback: Optional[str],
    salt_nonce: int,
    without_events: bool,
) -> SafeDeployParams:
    if chain_specific and chain_id is None:
        raise click.ClickException(
            "Requested chain-specific address but no chain ID provided."
        )
    elif not chain_specific and chain_id is not None:
        raise click.ClickException(
            "Option --chain-id only makes sense with --chain-specific."
        )
    if custom_singleton is not None and without_events:
        raise click.ClickException(
            "Option --without-events incompatible with custom singleton."
        )

    proxy_factory = to_checksum_address(
        custom_proxy_factory or DEFAULT_PROXYFACTORY_ADDRESS
    )
    if custom_singleton is not None:
        singleton = to_checksum_address(custom_singleton)
        variant = SafeVariant.UNKNOWN
    elif without_events:
        singleton = to_checksum_address(DEFAULT_SAFE_SINGLETON_ADDRESS)
        variant = SafeVariant.SAFE
    else:
        singleton = to_checksum_address(DEFAULT_SAFEL2_SINGLETON_ADDRESS)
        variant = SafeVariant.SAFE_L2

    return SafeDeployParams(
        proxy_factory=proxy_factory,
        singleton=singleton,
        chain_id=chain_id,
        salt_nonce=salt_nonce,
        variant=variant,
        fallback=to_checksum_address(fallback or DEFAULT_FALLBACK_ADDRESS),
    )
