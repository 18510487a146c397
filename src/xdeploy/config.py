"""Deployment run configuration loaded from JSON.

A run file describes the roles to deploy and, per chain, the values that
differ between networks. String arguments of the form `$name` are replaced
with per-chain variables or with the built-ins `$deployer` and `$chainId`.
"""

import json
import logging
import os
from typing import Any, Optional, Sequence

from hexbytes import HexBytes
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .constants import DEFAULT_DEPLOYMENTS_DIR
from .exceptions import ConfigurationError
from .models import ConfigCall, DeploymentConfig, RoleSpec
from .util import ABI_ERRORS, encode_call, function_types, to_checksum_address

logger = logging.getLogger(__name__)

MODEL_CONFIG = ConfigDict(
    extra="forbid", validate_by_alias=True, validate_by_name=True
)


class ConstructorConfig(BaseModel):
    types: list[str] = Field(default_factory=list)
    args: list[Any] = Field(default_factory=list)

    model_config = MODEL_CONFIG


class CallConfig(BaseModel):
    setter: str
    args: list[Any] = Field(default_factory=list)
    getter: Optional[str] = None
    getter_args: list[Any] = Field(default_factory=list, alias="getterArgs")
    returns: list[str] = Field(default_factory=lambda: ["bool"])
    expected: Any = None
    description: Optional[str] = None

    model_config = MODEL_CONFIG


class RoleConfig(BaseModel):
    name: str
    artifact: Optional[str] = None
    bytecode: Optional[str] = None
    constructor: ConstructorConfig = Field(default_factory=ConstructorConfig)
    calls: list[CallConfig] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = MODEL_CONFIG


class FactoryConfig(BaseModel):
    address: Optional[str] = None
    artifact: Optional[str] = None

    model_config = MODEL_CONFIG


class ChainConfig(BaseModel):
    network: str
    variables: dict[str, Any] = Field(default_factory=dict)

    model_config = MODEL_CONFIG


class RunConfigFile(BaseModel):
    namespace: str
    nonce: int = 0
    chain_specific: bool = Field(default=False, alias="chainSpecific")
    output_dir: Optional[str] = Field(default=None, alias="outputDir")
    factory: FactoryConfig
    roles: list[RoleConfig]
    chains: dict[int, ChainConfig] = Field(default_factory=dict)
    auxiliary: dict[str, Any] = Field(default_factory=dict)

    model_config = MODEL_CONFIG


def load_run_config(path: str) -> RunConfigFile:
    with open(path, "r") as f:
        data = f.read()
    try:
        return RunConfigFile.model_validate_json(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid run configuration {path}:\n{exc}") from exc


def load_artifact_bytecode(path: str) -> HexBytes:
    """Creation bytecode from a Hardhat or Foundry artifact."""
    with open(path, "r") as f:
        artifact = json.load(f)
    bytecode = artifact.get("bytecode")
    if isinstance(bytecode, dict):
        bytecode = bytecode.get("object")
    if not isinstance(bytecode, str):
        raise ConfigurationError(f"Artifact {path} has no bytecode.")
    code = HexBytes(bytecode)
    if len(code) == 0:
        raise ConfigurationError(f"Artifact {path} has empty bytecode.")
    return code


def substitute(value: Any, variables: dict[str, Any]) -> Any:
    if isinstance(value, str) and value.startswith("$"):
        name = value[1:]
        if name not in variables:
            raise ConfigurationError(f"Unknown variable '{value}'.")
        if variables[name] is None:
            raise ConfigurationError(f"Variable '{value}' is not set.")
        return variables[name]
    if isinstance(value, list):
        return [substitute(v, variables) for v in value]
    if isinstance(value, dict):
        return {k: substitute(v, variables) for k, v in value.items()}
    return value


def coerce_arg(abi_type: str, value: Any) -> Any:
    """Convert JSON values to what eth_abi expects for the type."""
    if abi_type.endswith("]"):
        inner = abi_type[: abi_type.rindex("[")]
        return [coerce_arg(inner, v) for v in value]
    if abi_type.startswith("bytes") and isinstance(value, str):
        return bytes(HexBytes(value))
    if abi_type.startswith(("uint", "int")) and isinstance(value, str):
        return int(value, 0)
    return value


def coerce_args(types: Sequence[str], args: Sequence[Any]) -> tuple[Any, ...]:
    if len(types) != len(args):
        raise ConfigurationError(
            f"Expected {len(types)} arguments for ({','.join(types)}), got {len(args)}."
        )
    return tuple(coerce_arg(t, a) for t, a in zip(types, args))


def _resolve(base_dir: str, path: str) -> str:
    return path if os.path.isabs(path) else os.path.join(base_dir, path)


def _check_call(label: str, signature: str, args: Sequence[Any]) -> Optional[str]:
    try:
        encode_call(signature, args)
    except ABI_ERRORS as exc:
        return f"{label} {signature}: {exc}"
    return None


def build_role(role: RoleConfig, variables: dict[str, Any], base_dir: str) -> RoleSpec:
    """Resolve one role and encode every call it will make.

    Everything that could fail to encode fails here, before any transaction
    is sent. All problems of the role are reported together.
    """
    from eth_abi.abi import encode as abi_encode
    from eth_abi.abi import is_encodable_type

    if (role.artifact is None) == (role.bytecode is None):
        raise ConfigurationError(
            f"Role '{role.name}' needs exactly one of 'artifact' or 'bytecode'."
        )
    if role.artifact is not None:
        bytecode = load_artifact_bytecode(_resolve(base_dir, role.artifact))
    else:
        assert role.bytecode is not None
        bytecode = HexBytes(role.bytecode)

    errors: list[str] = []
    creation_code = bytecode
    try:
        ctor_args = coerce_args(
            role.constructor.types, substitute(role.constructor.args, variables)
        )
        creation_code = HexBytes(
            bytecode + abi_encode(role.constructor.types, ctor_args)
        )
    except (ConfigurationError, *ABI_ERRORS) as exc:
        errors.append(f"constructor: {exc}")

    calls: list[ConfigCall] = []
    for call in role.calls:
        try:
            args = coerce_args(
                function_types(call.setter), substitute(call.args, variables)
            )
            getter_args: tuple[Any, ...] = ()
            expected = substitute(call.expected, variables)
            if call.getter is not None:
                getter_args = coerce_args(
                    function_types(call.getter),
                    substitute(call.getter_args, variables),
                )
                if len(call.returns) == 1:
                    expected = coerce_arg(call.returns[0], expected)
        except (ConfigurationError, *ABI_ERRORS) as exc:
            errors.append(f"call {call.setter}: {exc}")
            continue
        problems = [_check_call("setter", call.setter, args)]
        if call.getter is not None:
            problems.append(_check_call("getter", call.getter, getter_args))
            problems += [
                f"getter {call.getter}: unknown return type '{t}'"
                for t in call.returns
                if not is_encodable_type(t)
            ]
        errors += [p for p in problems if p is not None]
        calls.append(
            ConfigCall(
                setter=call.setter,
                args=args,
                getter=call.getter,
                getter_args=getter_args,
                getter_returns=tuple(call.returns),
                expected=expected,
                description=call.description,
            )
        )

    if errors:
        raise ConfigurationError(f"Role '{role.name}': " + "; ".join(errors) + ".")
    return RoleSpec(
        name=role.name,
        creation_code=creation_code,
        calls=tuple(calls),
        metadata=substitute(role.metadata, variables),
    )


def build_deployment_config(
    run: RunConfigFile,
    *,
    chain_id: int,
    deployer: Optional[str],
    base_dir: str = ".",
    output_dir: Optional[str] = None,
) -> DeploymentConfig:
    chain = run.chains.get(chain_id)
    if chain is None:
        logger.warning(f"No entry for chain {chain_id} in run configuration.")
        chain = ChainConfig(network=f"chain-{chain_id}")
    variables: dict[str, Any] = {
        **chain.variables,
        "deployer": deployer,
        "chainId": chain_id,
    }
    names = [role.name for role in run.roles]
    if len(set(names)) != len(names):
        raise ConfigurationError(f"Duplicate role names in {names}.")

    errors: list[str] = []
    roles: list[RoleSpec] = []
    for role in run.roles:
        try:
            roles.append(build_role(role, variables, base_dir))
        except ConfigurationError as exc:
            errors.append(str(exc))
    if errors:
        raise ConfigurationError("\n".join(errors))

    factory_creation_code = None
    if run.factory.artifact is not None:
        factory_creation_code = load_artifact_bytecode(
            _resolve(base_dir, run.factory.artifact)
        )
    factory = None
    if run.factory.address is not None:
        factory = to_checksum_address(run.factory.address)

    return DeploymentConfig(
        network=chain.network,
        namespace=run.namespace,
        nonce=run.nonce,
        roles=tuple(roles),
        chain_specific=run.chain_specific,
        factory=factory,
        factory_creation_code=factory_creation_code,
        auxiliary=substitute(run.auxiliary, variables),
        output_dir=output_dir or run.output_dir or DEFAULT_DEPLOYMENTS_DIR,
    )
