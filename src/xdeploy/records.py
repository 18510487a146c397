"""JSON records written after every deployment run."""

import logging
import os
import re
import time
from typing import Annotated, Callable, Literal, Optional, TypeVar

import eth_typing
from eth_utils.address import is_checksum_address
from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
)

from .constants import DEPLOYMENT_RECORD_PREFIX, MULTISIG_RECORD_PREFIX
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

HASH32_PATTERN = re.compile(r"^0x[0-9a-f]{64}$")


def validate_checksum_address(address: str) -> str:
    if not is_checksum_address(address):
        raise ValueError("Invalid EIP-55 checksum address.")
    return address


def validate_hash32(value: str) -> str:
    if not HASH32_PATTERN.match(value):
        raise ValueError("Expected 0x-prefixed lower-case 32-byte hex string.")
    return value


ChecksumAddress = Annotated[
    eth_typing.ChecksumAddress, AfterValidator(validate_checksum_address)
]
Hash32 = Annotated[str, AfterValidator(validate_hash32)]

MODEL_CONFIG = ConfigDict(
    frozen=True,
    serialize_by_alias=True,
    validate_by_alias=True,
    validate_by_name=True,
)


class Create2Info(BaseModel):
    factory: ChecksumAddress
    base_salt: str = Field(alias="baseSalt")
    nonce: int
    chain_specific: bool = Field(alias="chainSpecific")

    model_config = MODEL_CONFIG


class ContractRecord(BaseModel):
    address: ChecksumAddress
    bytecode_hash: Hash32 = Field(alias="bytecodeHash")
    status: Literal["deployed", "existing"]

    # Role metadata (e.g. owner, feeRate) is stored next to the fixed fields.
    model_config = ConfigDict(extra="allow", **MODEL_CONFIG)


class DeploymentRecord(BaseModel):
    network: str
    chain_id: int = Field(alias="chainId")
    timestamp: str
    deployer: ChecksumAddress
    create2: Create2Info
    salts: dict[str, Hash32]
    contracts: dict[str, ContractRecord]
    failures: dict[str, str] = Field(default_factory=dict)
    complete: bool

    # Auxiliary configuration (tokens, bridges...) is kept at the top level.
    model_config = ConfigDict(extra="allow", **MODEL_CONFIG)

    @property
    def roles(self) -> tuple[str, ...]:
        return tuple(self.contracts)


class MultisigInfo(BaseModel):
    level: int
    name: str
    address: ChecksumAddress
    threshold: int
    signers: list[ChecksumAddress]
    owners: list[ChecksumAddress]

    model_config = MODEL_CONFIG


class SafeFactoryInfo(BaseModel):
    proxy_factory: ChecksumAddress = Field(alias="proxyFactory")
    singleton: ChecksumAddress
    fallback_handler: ChecksumAddress = Field(alias="fallbackHandler")
    salt_nonce: str = Field(alias="saltNonce")
    chain_specific: bool = Field(default=False, alias="chainSpecific")

    model_config = MODEL_CONFIG


class TransactionInfo(BaseModel):
    hash: Hash32
    block_number: int = Field(alias="blockNumber")

    model_config = MODEL_CONFIG


class MultisigRecord(BaseModel):
    network: str
    chain_id: int = Field(alias="chainId")
    timestamp: str
    deployer: ChecksumAddress
    multisig: MultisigInfo
    gnosis_safe: SafeFactoryInfo = Field(alias="gnosisSafe")
    transaction: TransactionInfo

    model_config = MODEL_CONFIG


Record = TypeVar("Record", DeploymentRecord, MultisigRecord)


def reserved_keys(model: type[BaseModel]) -> set[str]:
    """Field names and aliases that extra keys must not shadow."""
    keys: set[str] = set()
    for name, field in model.model_fields.items():
        keys.add(name)
        if field.alias is not None:
            keys.add(field.alias)
    return keys


def deployment_record_filename(
    network: str, chain_id: int, millis: Optional[int] = None
) -> str:
    if millis is None:
        millis = time.time_ns() // 1_000_000
    return f"{DEPLOYMENT_RECORD_PREFIX}{network}-{chain_id}-{millis}.json"


def multisig_record_filename(
    level: int, network: str, millis: Optional[int] = None
) -> str:
    if millis is None:
        millis = time.time_ns() // 1_000_000
    return f"{MULTISIG_RECORD_PREFIX}{level}-{network}-{millis}.json"


def available_filename(directory: str, make_filename: Callable[[int], str]) -> str:
    """Pick a timestamped file name not yet present in the directory."""
    millis = time.time_ns() // 1_000_000
    while os.path.exists(os.path.join(directory, make_filename(millis))):
        millis += 1
    return make_filename(millis)


def serialize_record(record: BaseModel) -> str:
    return record.model_dump_json(indent=2)


def write_record(record: BaseModel, directory: str, filename: str) -> str:
    """Write a record, refusing to replace an existing file."""
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, filename)
    try:
        with open(path, "x") as f:
            f.write(serialize_record(record))
            f.write("\n")
    except FileExistsError as exc:
        raise ConfigurationError(f"Refusing to overwrite record {path}.") from exc
    logger.info(f"Wrote record {path}")
    return path


def load_record(path: str, model: type[Record] = DeploymentRecord) -> Record:
    with open(path, "r") as f:
        data = f.read()
    try:
        return model.model_validate_json(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid record {path}:\n{exc}") from exc
