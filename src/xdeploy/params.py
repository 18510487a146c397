import dataclasses
from typing import Any, Callable, Iterable, Optional, TypeVar, Union

import click
from click import Command
from click_option_group import RequiredMutuallyExclusiveOptionGroup
from click_option_group._decorators import (
    _OptGroup,  # pyright: ignore[reportPrivateUsage]
)

from .console import XDEPLOY_DEBUG, activate_logging
from .constants import DEFAULT_DEPLOYMENTS_DIR, DEPLOY_SAFE_VERSION

FC = TypeVar("FC", bound=Callable[..., Any] | Command)

Decorator = Callable[[FC], FC]

optgroup = _OptGroup()


def verbose_callback(
    ctx: click.Context, opt: click.Option, value: Optional[bool]
) -> Optional[Any]:
    if value and not XDEPLOY_DEBUG:
        activate_logging()
    return None


# ┌─────────────┐
# │ Option Info │
# └─────────────┘


@dataclasses.dataclass(kw_only=True)
class OptionInfo:
    args: Iterable[str]
    help: str
    # defaults should match click.Option
    metavar: Optional[str] = None
    type: Optional[Union[click.types.ParamType, Any]] = None


def make_option(
    option: OptionInfo, cls: Decorator[Any] = click.option, **overrides: Any
) -> Decorator[FC]:
    info = dataclasses.asdict(option)
    info.update(**overrides)
    args = info.pop("args")
    return cls(*args, **info)


chain_id_option_info = OptionInfo(
    args=["--chain-id"],
    help="the chain ID to use",
    type=int,
    metavar="ID",
)

namespace_option_info = OptionInfo(
    args=["--namespace"],
    help="namespace mixed into the CREATE2 salt",
    metavar="NAME",
)

nonce_option_info = OptionInfo(
    args=["--nonce"],
    help="deployment nonce mixed into the CREATE2 salt",
    type=click.IntRange(min=0),
)


# ┌─────────┐
# │ Options │
# └─────────┘


def authentication(f: FC) -> FC:
    for option in reversed(
        [
            optgroup.group(
                "Authentication",
                cls=RequiredMutuallyExclusiveOptionGroup,
            ),
            optgroup.option(
                "--keyfile",
                "-k",
                type=click.Path(exists=True),
                help="local Ethereum keyfile",
            ),
            optgroup.option(
                "--trezor",
                metavar="ACCOUNT",
                help="Trezor BIP32 derivation path or account index",
            ),
            optgroup.option(
                "--ledger",
                metavar="ACCOUNT",
                help="Ledger BIP32 derivation path or account index",
            ),
            click.option(
                "--expect-signer",
                metavar="ADDRESS",
                help="abort unless the signer has this address",
            ),
        ]
    ):
        f = option(f)
    return f


def common(f: FC) -> FC:
    for option in reversed(
        [
            click.option(
                "--verbose",
                "-v",
                is_flag=True,
                expose_value=False,
                is_eager=True,
                help="print informational messages",
                callback=verbose_callback,
            ),
        ]
    ):
        f = option(f)
    return f


def multisig(f: FC) -> FC:
    for option in reversed(
        [
            optgroup.group(
                "Multisig settings",
            ),
            optgroup.option(
                "--level",
                type=int,
                required=True,
                help="hierarchy level (2 admin, 3 treasury, 4 emergency)",
            ),
            optgroup.option(
                "--signer",
                "signers",
                multiple=True,
                metavar="ADDRESS",
                type=str,
                help="add a signer (repeat option to add more)",
            ),
            optgroup.option(
                "--threshold",
                type=int,
                help="number of required confirmations [default: level policy]",
            ),
            optgroup.option(
                "--name",
                help="human-readable name of the multisig",
            ),
        ]
    ):
        f = option(f)
    return f


# Reuse the same decorator for `multisig deploy` and `multisig precompute`.
def safe_deployment(precompute: bool) -> Callable[[FC], FC]:
    def decorator(f: FC) -> FC:
        for option in reversed(
            [
                optgroup.group(
                    "Deployment settings",
                ),
                optgroup.option(
                    "--chain-specific",
                    is_flag=True,
                    default=False,
                    help="account address will depend on "
                    + ("Web3 chain ID" if not precompute else "--chain-id"),
                ),
                # In `multisig deploy` the chain ID comes from the RPC node.
                make_option(
                    chain_id_option_info,
                    cls=optgroup.option,
                    help=chain_id_option_info.help + " (required for --chain-specific)",
                )
                if precompute
                else None,
                make_option(namespace_option_info, cls=optgroup.option),
                make_option(nonce_option_info, cls=optgroup.option, default=0),
                optgroup.option(
                    "--salt-nonce",
                    type=str,
                    metavar="BYTES32",
                    help="explicit nonce used to generate CREATE2 salt",
                ),
                optgroup.option(
                    "--without-events",
                    is_flag=True,
                    default=False,
                    help="use implementation that does not emit events",
                ),
                optgroup.option(
                    "--custom-singleton",
                    metavar="ADDRESS",
                    help=f"use a non-canonical Singleton {DEPLOY_SAFE_VERSION}",
                ),
                optgroup.option(
                    "--custom-proxy-factory",
                    metavar="ADDRESS",
                    help=f"use a non-canonical SafeProxyFactory {DEPLOY_SAFE_VERSION}",
                ),
                optgroup.option(
                    "--fallback",
                    metavar="ADDRESS",
                    help="custom Fallback Handler address",
                ),
            ]
        ):
            if option is not None:
                f = option(f)
        return f

    return decorator


def web3tx(f: FC) -> FC:
    for option in reversed(
        [
            optgroup.group(
                "Web3 Transaction",
            ),
            optgroup.option(
                "--gas-limit",
                type=click.IntRange(min=0),
                help="gas limit of every transaction [default: estimate]",
            ),
            optgroup.option(
                "--max-fee",
                type=click.IntRange(min=0),
                metavar="WEI",
                help="max total fee per gas",
            ),
            optgroup.option(
                "--max-pri-fee",
                type=click.IntRange(min=0),
                metavar="WEI",
                help="max priority fee per gas",
            ),
        ]
    ):
        f = option(f)
    return f


chain_id = make_option(chain_id_option_info)

config_file = click.argument(
    "config_file", metavar="CONFIG", type=click.Path(exists=True, dir_okay=False)
)

deployer = click.option(
    "--deployer",
    metavar="ADDRESS",
    help="deployer address substituted for $deployer",
)

force = click.option(
    "--force",
    "-f",
    is_flag=True,
    default=False,
    help="skip confirmation prompts",
)

output_dir = click.option(
    "--output-dir",
    type=click.Path(file_okay=False),
    help=f"directory for deployment records [default: {DEFAULT_DEPLOYMENTS_DIR}]",
)

output_file = click.option(
    "--output", "-o", type=click.File(mode="w"), help="write output to FILENAME"
)


def rpc(
    decorator: Callable[..., Callable[[FC], FC]], required: bool = False
) -> Callable[[FC], FC]:
    return decorator(
        "--rpc",
        "-r",
        required=required,
        envvar="XDEPLOY_RPC",
        metavar="URL",
        show_envvar=True,
        help="HTTP JSON-RPC endpoint",
    )


def multisig_record(f: FC) -> FC:
    for option in reversed(
        [
            optgroup.group(
                "Multisig record",
            ),
            optgroup.option(
                "--level",
                type=click.IntRange(min=2, max=4),
                default=2,
                help="hierarchy level of the multisig",
            ),
            optgroup.option(
                "--network",
                help="only consider records of this network",
            ),
            optgroup.option(
                "--dir",
                "directory",
                type=click.Path(file_okay=False),
                default=DEFAULT_DEPLOYMENTS_DIR,
                help="directory searched for multisig-level*.json records",
            ),
        ]
    ):
        f = option(f)
    return f
