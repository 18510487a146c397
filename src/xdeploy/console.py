import logging
import os
import sys
import typing
from importlib.metadata import version
from typing import TYPE_CHECKING, Any, Optional, Sequence

from click import Context, Parameter
from hexbytes import HexBytes
from rich.console import Console
from rich.theme import Theme

from .constants import (
    DEFAULT_FALLBACK_ADDRESS,
    DEFAULT_PROXYFACTORY_ADDRESS,
    DEFAULT_SAFE_SINGLETON_ADDRESS,
    DEFAULT_SAFEL2_SINGLETON_ADDRESS,
    SYMBOL_CAUTION,
    SYMBOL_CHECK,
    SYMBOL_CROSS,
    SYMBOL_WARNING,
)
from .models import RoleResult, RoleStatus, SafeDeployParams, SafeVariant
from .util import format_native_value, hexbytes_json_encoder

if TYPE_CHECKING:
    from eth_typing import ChecksumAddress
    from rich.console import RenderableType
    from rich.panel import Panel
    from rich.table import Table

    from .multisig import LevelRule, MultisigSpec, ValidationResult
    from .records import DeploymentRecord
    from .verify import VerificationReport


logger = logging.getLogger(__name__)

# Constants
JSON_INDENT_LEVEL = 2
XDEPLOY_DEBUG = True if "XDEPLOY_DEBUG" in os.environ else False

console = Console(
    theme=Theme(
        {
            "ok": "green",
            "danger": "bold red",
            "caution": "yellow",
            "secondary": "dim",
            "panel_ok": "green",
            "panel_danger": "red",
            "panel_caution": "yellow",
        }
    )
)


def activate_logging():
    from rich.logging import RichHandler

    if XDEPLOY_DEBUG:
        level = logging.NOTSET
    else:
        level = logging.INFO
    format = "<%(name)s.%(funcName)s> %(message)s"
    logging.basicConfig(
        level=level,
        format=format,
        datefmt="[%X]",
        handlers=[RichHandler(console=console)],
    )


def get_json_data_renderable(
    data: dict[str, Any], indent: Optional[int] = JSON_INDENT_LEVEL
) -> "RenderableType":
    from rich.json import JSON

    return JSON.from_data(data, default=hexbytes_json_encoder, indent=indent)


def get_kvtable(
    *args: dict[str, "RenderableType"], draw_divider: bool = True
) -> "Table":
    from rich.box import Box
    from rich.table import Table
    from rich.text import Text

    custom_box: Box = Box(
        "    \n"  # top
        "    \n"  # head
        "    \n"  # head_row
        "    \n"  # mid
        " ── \n"  # row
        "    \n"  # foot_row
        "    \n"  # foot
        "    \n"  # bottom
    )
    table = Table(
        show_edge=False,
        show_header=False,
        box=custom_box,
    )
    table.add_column("Field", justify="right", style="bold", no_wrap=True)
    table.add_column("Value", no_wrap=False)
    for idx, arg in enumerate(args):
        for key, val in arg.items():
            # Wrap all strings in a Text with overflow.
            if isinstance(val, str):
                table.add_row(key, Text.from_markup(val, overflow="fold"))
            else:
                table.add_row(key, val)
        if len(args) > 1 and idx < len(args) - 1:
            if draw_divider:
                table.add_section()
            else:
                table.add_row("", "")
    return table


def get_output_console(output: Optional[typing.TextIO] = None) -> Console:
    """Return a Console suitable for printing results.

    The Console must not insert hard wraps, which Rich normally inserts by
    default. This is important when piping or writing text-encoded data to a
    file such as a hexadecimal string or a JSON object.
    """
    return Console(file=output if output else sys.stdout, soft_wrap=True)


def get_panel(
    title: str, subtitle: str, renderable: "RenderableType", **kwargs: Any
) -> "Panel":
    from rich.box import ROUNDED
    from rich.panel import Panel

    base_config = dict(
        title=title,
        title_align="left",
        subtitle=subtitle,
        subtitle_align="right",
        border_style="bold italic",
        padding=(1, 1),
    )
    base_config.update(**kwargs)
    return Panel(renderable, box=ROUNDED, **base_config)  # pyright: ignore[reportArgumentType]


def make_status_logger(logger: logging.Logger):
    def status_logger(message: str):
        logger.info(message, stacklevel=2)
        return console.status(message)

    return status_logger


def print_kvtable(
    title: str,
    subtitle: str,
    *args: dict[str, "RenderableType"],
    draw_divider: bool = True,
    **panel_kwargs: Any,
) -> None:
    table = get_kvtable(*args, draw_divider=draw_divider)
    console.print(get_panel(title, subtitle, table, **panel_kwargs))


def _match(ok: bool, good: str = "MATCH", bad: str = "MISMATCH") -> str:
    if ok:
        return f"[ok]{SYMBOL_CHECK} {good}[/ok]"
    return f"[danger]{SYMBOL_CROSS} {bad}[/danger]"


def print_deployment_plan(
    network: str,
    chain_id: int,
    factory: "ChecksumAddress",
    plan: Sequence[tuple[str, HexBytes, "ChecksumAddress"]],
) -> None:
    print_kvtable(
        "CREATE2 Deployment Plan",
        f"[ {network} / chain {chain_id} ]",
        {"Factory": factory},
        *[
            {
                "Role": role,
                "Salt": salt.to_0x_hex(),
                "Predicted Address": address,
            }
            for role, salt, address in plan
        ],
    )


def print_role_results(results: Sequence[RoleResult]) -> None:
    rows: list[dict[str, "RenderableType"]] = []
    for result in results:
        row: dict[str, "RenderableType"] = {
            "Role": result.role,
            "Address": result.address,
        }
        if result.status is RoleStatus.FAILED:
            row["Status"] = f"[danger]{SYMBOL_CROSS} FAILED[/danger]"
            row["Error"] = str(result.error)
        else:
            label = (
                "DEPLOYED"
                if result.status is RoleStatus.DEPLOYED
                else "ALREADY DEPLOYED"
            )
            row["Status"] = f"[ok]{SYMBOL_CHECK} {label}[/ok]"
            assert result.bytecode_hash is not None
            row["Bytecode Hash"] = result.bytecode_hash.to_0x_hex()
            row["Config Calls"] = str(result.calls_sent)
        rows.append(row)
    failed = any(r.status is RoleStatus.FAILED for r in results)
    print_kvtable(
        "Deployment Results",
        f"[{SYMBOL_CROSS} PARTIAL]" if failed else f"[{SYMBOL_CHECK} COMPLETE]",
        *rows,
        border_style="panel_danger" if failed else "panel_ok",
    )


def print_signer_info(signer: str, address: "ChecksumAddress", balance: int) -> None:
    print_kvtable(
        "Signer",
        "",
        {
            "Signer": signer,
            "Address": address,
            "Balance": format_native_value(balance)
            if balance > 0
            else f"[caution]{SYMBOL_CAUTION} 0 ETH[/caution]",
        },
    )


def print_record_summary(record: "DeploymentRecord", path: str) -> None:
    print_kvtable(
        "Deployment Record",
        "",
        {
            "File": path,
            "Network": f"{record.network} (chain {record.chain_id})",
            "Deployer": record.deployer,
            "Factory": record.create2.factory,
            "Complete": "yes" if record.complete else "[danger]no[/danger]",
        },
    )


def print_verification_report(report: "VerificationReport") -> None:
    if report.mode == "live":
        rows: list[dict[str, "RenderableType"]] = [
            {
                "Role": check.role,
                "Address": check.address,
                "On Chain": _match(check.exists, "DEPLOYED", "NOT FOUND"),
                "Expected Hash": check.expected_hash,
                "Actual Hash": check.actual_hash or "<none>",
                "Bytecode": _match(check.bytecode_match),
            }
            for check in report.live_checks
        ]
    else:
        rows = [
            {
                "Role": cmp.role,
                "Compared": f"{cmp.network} (chain {cmp.chain_id})",
                "Address": _match(cmp.address_match),
                "Bytecode": _match(cmp.bytecode_match),
            }
            for cmp in report.comparisons
        ]
    subtitle = (
        f"[{SYMBOL_CHECK} VALID]" if report.valid else f"[{SYMBOL_CROSS} INVALID]"
    )
    print_kvtable(
        "Cross-Chain Verification",
        subtitle,
        {
            "Reference": report.reference,
            "Records": str(report.record_count),
            "Mode": report.mode,
        },
        *rows,
        border_style="panel_ok" if report.valid else "panel_danger",
    )
    for cmp in report.code_divergence:
        logger.warning(
            f"{SYMBOL_WARNING} {cmp.role} on {cmp.network} has the reference "
            "address but different runtime code. Different source was deployed "
            "behind an identical address."
        )


def print_multisig_validation(spec: "MultisigSpec", result: "ValidationResult") -> None:
    data: dict[str, "RenderableType"] = {
        "Level": str(spec.level),
        "Name": spec.name,
        f"Signers({len(spec.signers)})": ", ".join(spec.signers),
        "Threshold": str(spec.threshold),
    }
    errors = {
        f"Error {1 + i}": f"[danger]{err}[/danger]"
        for i, err in enumerate(result.errors)
    }
    print_kvtable(
        "Multisig Configuration",
        f"[{SYMBOL_CHECK} VALID]" if result.valid else f"[{SYMBOL_CROSS} INVALID]",
        data,
        *([errors] if errors else []),
        border_style="panel_ok" if result.valid else "panel_danger",
    )


def print_hierarchy(rules: Sequence["LevelRule"]) -> None:
    print_kvtable(
        "Multisig Hierarchy",
        "",
        *[
            {
                "Level": f"{rule.level.value} ({rule.title})",
                "Policy": f"{rule.threshold}-of-{rule.signers}",
                "Purpose": rule.purpose,
                "Permissions": "\n".join(rule.permissions),
                "Notes": "\n".join(rule.notes),
            }
            for rule in rules
        ],
    )


def print_safe_deploy_info(
    spec: "MultisigSpec", data: SafeDeployParams, safe_address: "ChecksumAddress"
):
    variant = {
        SafeVariant.SAFE: "Safe.sol (without events)",
        SafeVariant.SAFE_L2: "SafeL2.sol (emits events)",
        SafeVariant.UNKNOWN: "unknown",
    }[data.variant]
    base_params: dict[str, "RenderableType"] = {
        "Proxy Factory": data.proxy_factory
        + (
            f" [ok]{SYMBOL_CHECK} CANONICAL[/ok]"
            if data.proxy_factory == DEFAULT_PROXYFACTORY_ADDRESS
            else ""
        ),
        "Singleton": data.singleton
        + (
            f" [ok]{SYMBOL_CHECK} CANONICAL[/ok]"
            if data.singleton
            in (DEFAULT_SAFE_SINGLETON_ADDRESS, DEFAULT_SAFEL2_SINGLETON_ADDRESS)
            else ""
        ),
        "Safe Variant": variant,
        "Salt Nonce": HexBytes(data.salt_nonce.to_bytes(32, "big")).to_0x_hex(),
    }
    if data.chain_id is not None:
        base_params["Chain ID"] = str(data.chain_id)
    print_kvtable(
        "Safe Deployment Parameters",
        f"[ level {spec.level} ]",
        base_params,
        {
            "Name": spec.name,
            f"Owners({len(spec.signers)})": ", ".join(spec.signers),
            "Threshold": str(spec.threshold),
            "Fallback Handler": data.fallback
            + (
                f" [ok]{SYMBOL_CHECK} DEFAULT[/ok]"
                if data.fallback == DEFAULT_FALLBACK_ADDRESS
                else f" [caution]{SYMBOL_CAUTION} CUSTOM[/caution]"
            ),
        },
        {
            "Safe Address": f"{safe_address}",
        },
    )


def print_version(ctx: Context, param: Parameter, value: Optional[bool]) -> None:
    if not value or ctx.resilient_parsing:
        return

    get_output_console().print(f"xdeploy v{version('xdeploy')}", highlight=False)
    ctx.exit()
