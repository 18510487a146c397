import dataclasses
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    NamedTuple,
    Optional,
)

from hexbytes import (
    HexBytes,
)

from .constants import DEFAULT_DEPLOYMENTS_DIR
from .exceptions import ConfigurationError
from .records import ContractRecord, DeploymentRecord, reserved_keys

if TYPE_CHECKING:
    from eth_typing import ChecksumAddress


class LedgerEntry(NamedTuple):
    salt: HexBytes
    address: "ChecksumAddress"
    creation_code_hash: HexBytes
    deployer: "ChecksumAddress"
    block_number: int


def check_extra_keys(what: str, extra: dict[str, Any], model: Any) -> None:
    # Extra keys are stored next to the record's own fields.
    clashes = sorted(set(extra) & reserved_keys(model))
    if clashes:
        raise ConfigurationError(f"{what} uses reserved record keys {clashes}.")


@dataclasses.dataclass(frozen=True, kw_only=True)
class ConfigCall:
    """A post-deployment call on a freshly deployed contract.

    When `getter` is set the call is skipped if the getter already returns
    `expected`, which makes re-running a deployment a no-op.
    """

    setter: str
    args: tuple[Any, ...] = ()
    getter: Optional[str] = None
    getter_args: tuple[Any, ...] = ()
    getter_returns: tuple[str, ...] = ("bool",)
    expected: Any = None
    description: Optional[str] = None


@dataclasses.dataclass(frozen=True, kw_only=True)
class RoleSpec:
    name: str
    creation_code: HexBytes
    calls: tuple[ConfigCall, ...] = ()
    metadata: dict[str, Any] = dataclasses.field(default_factory=dict)

    def __post_init__(self):
        check_extra_keys(f"Role '{self.name}' metadata", self.metadata, ContractRecord)


@dataclasses.dataclass(frozen=True, kw_only=True)
class DeploymentConfig:
    network: str
    namespace: str
    nonce: int
    roles: tuple[RoleSpec, ...]
    chain_specific: bool = False
    # Existing factory address, or the address the factory is expected to
    # land at when `factory_creation_code` is deployed.
    factory: Optional["ChecksumAddress"] = None
    factory_creation_code: Optional[HexBytes] = None
    auxiliary: dict[str, Any] = dataclasses.field(default_factory=dict)
    output_dir: str = DEFAULT_DEPLOYMENTS_DIR

    def __post_init__(self):
        check_extra_keys("Auxiliary configuration", self.auxiliary, DeploymentRecord)


class RoleStatus(Enum):
    DEPLOYED = "deployed"
    EXISTING = "existing"
    FAILED = "failed"


class RoleResult(NamedTuple):
    role: str
    salt: HexBytes
    address: "ChecksumAddress"
    status: RoleStatus
    bytecode_hash: Optional[HexBytes] = None
    error: Optional[str] = None
    calls_sent: int = 0


class SafeVariant(Enum):
    SAFE = 1
    SAFE_L2 = 2
    UNKNOWN = 3


@dataclasses.dataclass(kw_only=True)
class SafeDeployParams:
    # deployment
    proxy_factory: "ChecksumAddress"
    singleton: "ChecksumAddress"
    chain_id: Optional[int]
    salt_nonce: int
    variant: SafeVariant
    # initialization
    fallback: "ChecksumAddress"


class SafeInfo(NamedTuple):
    owners: Optional[list["ChecksumAddress"]] = None
    threshold: Optional[int] = None


class Web3TxOptions(NamedTuple):
    chain_id: Optional[int] = None
    gas_limit: Optional[int] = None
    nonce: Optional[int] = None
    max_fee: Optional[int] = None
    max_pri_fee: Optional[int] = None
