import logging
import os
import shutil
import sys
import typing
from types import TracebackType
from typing import (
    TYPE_CHECKING,
    Any,
    Optional,
)

import click
from hexbytes import (
    HexBytes,
)
from rich.prompt import Confirm
from rich.traceback import Traceback

from . import params
from .console import (
    XDEPLOY_DEBUG,
    activate_logging,
    console,
    get_json_data_renderable,
    get_output_console,
    make_status_logger,
    print_deployment_plan,
    print_hierarchy,
    print_kvtable,
    print_multisig_validation,
    print_record_summary,
    print_role_results,
    print_safe_deploy_info,
    print_signer_info,
    print_verification_report,
    print_version,
)
from .constants import SYMBOL_CHECK, SYMBOL_CROSS
from .exceptions import XDeployError
from .models import SafeDeployParams, Web3TxOptions

if TYPE_CHECKING:
    from .auth import Signer
    from .chain import Web3Chain
    from .models import DeploymentConfig
    from .multisig import MultisigSpec

# ┌───────┐
# │ Setup │
# └───────┘

logger = logging.getLogger(__name__)
status = make_status_logger(logger)


def handle_crash(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_traceback: TracebackType | None,
) -> None:
    from web3.exceptions import ContractLogicError

    if not XDEPLOY_DEBUG:
        if exc_type is ContractLogicError:
            exc = typing.cast(ContractLogicError, exc_value)
            console.print(
                f'[bold]{exc_type.__name__}[/bold]: "{exc.message}" ({exc.data})'
            )
        else:
            console.print(f"[bold]{exc_type.__name__}[/bold]: {exc_value}")
    else:
        rich_traceback = Traceback.from_exception(
            exc_type,
            exc_value,
            exc_traceback,
            suppress=[click],
            show_locals=True,
        )
        console.print(rich_traceback)


sys.excepthook = handle_crash


class Group(click.Group):
    """Turn xdeploy errors into concise CLI errors."""

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except XDeployError as exc:
            if XDEPLOY_DEBUG:
                raise
            raise click.ClickException(f"{type(exc).__name__}: {exc}") from exc

    def group(self, *args: Any, **kwargs: Any) -> Any:
        kwargs.setdefault("cls", Group)
        return super().group(*args, **kwargs)


def get_chain(rpc: str, txopts: Optional[Web3TxOptions] = None) -> "Web3Chain":
    from .chain import Web3Chain

    with status("Connecting to RPC node..."):
        chain = Web3Chain.from_uri(rpc, txopts)
        logger.info(f"Connected to chain {chain.chain_id}")
    return chain


def get_authenticated_signer(
    keyfile: Optional[str],
    trezor: Optional[str],
    ledger: Optional[str],
    expect_signer: Optional[str],
) -> "Signer":
    from .auth import SignerBackend, SignerConfig, derivation_path, get_signer

    if keyfile is not None:
        config = SignerConfig(
            backend=SignerBackend.KEYFILE,
            keyfile=keyfile,
            expected_address=expect_signer,
        )
    elif trezor is not None:
        config = SignerConfig(
            backend=SignerBackend.TREZOR,
            derivation_path=derivation_path(trezor),
            expected_address=expect_signer,
        )
    else:
        assert ledger is not None
        config = SignerConfig(
            backend=SignerBackend.LEDGER,
            derivation_path=derivation_path(ledger),
            expected_address=expect_signer,
        )
    return get_signer(config)


def get_deployment_config(
    config_file: str,
    *,
    chain_id: int,
    deployer: Optional[str],
    output_dir: Optional[str] = None,
) -> "DeploymentConfig":
    from .config import build_deployment_config, load_run_config

    with status("Loading run configuration..."):
        run = load_run_config(config_file)
        return build_deployment_config(
            run,
            chain_id=chain_id,
            deployer=deployer,
            base_dir=os.path.dirname(os.path.abspath(config_file)),
            output_dir=output_dir,
        )


def get_multisig_spec(
    level: int, signers: list[str], threshold: Optional[int], name: Optional[str]
) -> "MultisigSpec":
    from .multisig import MultisigSpec

    return MultisigSpec.from_config(level, signers, threshold=threshold, name=name)


def get_safe_deploy_params(
    spec: "MultisigSpec",
    *,
    chain_id: Optional[int],
    chain_specific: bool,
    custom_proxy_factory: Optional[str],
    custom_singleton: Optional[str],
    fallback: Optional[str],
    namespace: Optional[str],
    nonce: int,
    salt_nonce: Optional[str],
    without_events: bool,
) -> SafeDeployParams:
    from .multisig import derive_safe_salt_nonce
    from .workflows import validate_safe_deploy_options

    if salt_nonce is not None:
        if namespace is not None:
            raise click.ClickException(
                "Options --salt-nonce and --namespace are mutually exclusive."
            )
        salt_nonce_int = int.from_bytes(HexBytes(salt_nonce), "big")
    elif namespace is not None:
        salt_nonce_int = derive_safe_salt_nonce(namespace, spec, nonce)
    else:
        raise click.ClickException("Provide --namespace or --salt-nonce.")
    return validate_safe_deploy_options(
        chain_id=chain_id,
        chain_specific=chain_specific,
        custom_proxy_factory=custom_proxy_factory,
        custom_singleton=custom_singleton,
        fallback=fallback,
        salt_nonce=salt_nonce_int,
        without_events=without_events,
    )


# ┌──────┐
# │ Main │
# └──────┘


@click.group(
    cls=Group,
    context_settings=dict(
        show_default=True,
        max_content_width=shutil.get_terminal_size().columns,
        help_option_names=["-h", "--help"],
    ),
)
@click.option(
    "--version",
    is_flag=True,
    callback=print_version,
    expose_value=False,
    is_eager=True,
    help="print version info and exit",
)
def main():
    """Deterministic cross-chain CREATE2 deployments."""
    if XDEPLOY_DEBUG:
        activate_logging()


# ┌──────────┐
# │ Commands │
# └──────────┘


@main.command()
@params.make_option(params.chain_id_option_info, default=0)
@params.make_option(params.nonce_option_info, default=0)
@click.argument("namespace")
@params.common
def salt(chain_id: int, namespace: str, nonce: int):
    """Derive a CREATE2 salt.

    Deployments meant to share one address on every chain use chain ID 0.
    """
    from .create2 import derive_salt

    output_console = get_output_console()
    output_console.print(derive_salt(namespace, chain_id, nonce).to_0x_hex())


@main.command()
@params.make_option(params.chain_id_option_info, required=True)
@params.deployer
@params.config_file
@params.output_file
@params.common
def precompute(
    chain_id: int,
    config_file: str,
    deployer: Optional[str],
    output: typing.TextIO | None,
):
    """Compute role addresses offline."""
    from .orchestrator import plan_roles, resolve_factory_address

    config = get_deployment_config(config_file, chain_id=chain_id, deployer=deployer)
    factory = resolve_factory_address(config)
    plan = plan_roles(config, factory, chain_id)
    console.line()
    print_deployment_plan(config.network, chain_id, factory, plan)
    if not output:
        console.line()
    output_console = get_output_console(output)
    output_console.print(
        get_json_data_renderable({role: address for role, _, address in plan})
    )


@main.command()
@params.web3tx
@params.authentication
@params.rpc(click.option, required=True)
@params.force
@params.output_dir
@params.config_file
@params.common
def deploy(
    config_file: str,
    expect_signer: Optional[str],
    force: bool,
    gas_limit: Optional[int],
    keyfile: Optional[str],
    ledger: Optional[str],
    max_fee: Optional[int],
    max_pri_fee: Optional[int],
    output_dir: Optional[str],
    rpc: str,
    trezor: Optional[str],
):
    """Deploy every role of CONFIG through the CREATE2 factory.

    Re-running a partially failed deployment is safe: roles that already
    exist are skipped and their configuration calls are re-checked.
    """
    from .orchestrator import (
        DeploymentOrchestrator,
        plan_roles,
        resolve_factory_address,
    )

    txopts = Web3TxOptions(
        gas_limit=gas_limit, max_fee=max_fee, max_pri_fee=max_pri_fee
    )
    chain = get_chain(rpc, txopts)
    signer = get_authenticated_signer(keyfile, trezor, ledger, expect_signer)
    console.line()
    print_signer_info(repr(signer), signer.address, chain.get_balance(signer.address))
    config = get_deployment_config(
        config_file,
        chain_id=chain.chain_id,
        deployer=signer.address,
        output_dir=output_dir,
    )
    factory = resolve_factory_address(config)
    console.line()
    print_deployment_plan(
        config.network,
        chain.chain_id,
        factory,
        plan_roles(config, factory, chain.chain_id),
    )
    console.line()
    if not force and not Confirm.ask("Deploy contracts?", default=False):
        raise click.Abort()

    orchestrator = DeploymentOrchestrator(chain, signer, config)
    record = orchestrator.run()
    assert orchestrator.record_path is not None
    console.line()
    print_role_results(orchestrator.results)
    console.line()
    print_record_summary(record, orchestrator.record_path)
    if not record.complete:
        raise click.ClickException(
            f"Deployment incomplete, failed roles: {', '.join(record.failures)}."
        )


@main.command(name="status")
@params.rpc(click.option, required=True)
@params.deployer
@params.config_file
@params.common
def deployment_status(config_file: str, deployer: Optional[str], rpc: str):
    """Show the ledger state of every role in CONFIG."""
    from .ledger import Create2Factory, DeploymentLedger
    from .orchestrator import plan_roles, resolve_factory_address

    chain = get_chain(rpc)
    config = get_deployment_config(
        config_file, chain_id=chain.chain_id, deployer=deployer
    )
    factory_address = resolve_factory_address(config)
    if len(chain.get_code(factory_address)) == 0:
        raise click.ClickException(f"No CREATE2 factory deployed at {factory_address}.")
    ledger = DeploymentLedger(Create2Factory(chain, factory_address))
    rows: list[dict[str, Any]] = []
    with status("Querying role state..."):
        for role, salt, address in plan_roles(config, factory_address, chain.chain_id):
            deployed = ledger.is_deployed(address)
            rows.append(
                {
                    "Role": role,
                    "Address": address,
                    "Salt Used": "yes" if ledger.is_used(salt) else "no",
                    "Code": f"[ok]{SYMBOL_CHECK} DEPLOYED[/ok]"
                    if deployed
                    else f"[danger]{SYMBOL_CROSS} NONE[/danger]",
                    "Bytecode Hash": ledger.bytecode_hash(address).to_0x_hex()
                    if deployed
                    else "<none>",
                }
            )
    console.line()
    print_kvtable(
        "Deployment Status",
        f"[ {config.network} / chain {chain.chain_id} ]",
        {"Factory": factory_address},
        *rows,
    )


@main.command()
@click.option(
    "--dir",
    "directory",
    type=click.Path(file_okay=False),
    default="deployments",
    help="directory searched for create2-*.json records",
)
@params.rpc(click.option)
@click.argument(
    "records", metavar="[RECORD]...", type=click.Path(exists=True), nargs=-1
)
@params.common
def verify(directory: str, records: list[str], rpc: Optional[str]):
    """Verify that every chain holds identical code at identical addresses.

    With more than one record the first (in file name order) is the
    reference for all others. A single record is checked against the
    chain behind --rpc instead.
    """
    from .verify import find_record_files, load_records, verify_deployments

    paths = list(records) if records else find_record_files(directory)
    loaded = load_records(paths)
    chain = get_chain(rpc) if rpc is not None and len(loaded) == 1 else None
    report = verify_deployments(loaded, chain)
    console.line()
    print_verification_report(report)
    if not report.valid:
        raise click.ClickException("Cross-chain verification failed.")


@main.group()
def multisig():
    """Validate and create the Safe multisig hierarchy."""
    pass


@multisig.command(name="validate")
@params.multisig
@params.common
def multisig_validate(
    level: int, name: Optional[str], signers: list[str], threshold: Optional[int]
):
    """Check a multisig configuration against the level policy."""
    from .multisig import validate_spec

    spec = get_multisig_spec(level, signers, threshold, name)
    result = validate_spec(spec)
    console.line()
    print_multisig_validation(spec, result)
    if not result.valid:
        raise click.ClickException(f"Found {len(result.errors)} error(s).")


@multisig.command(name="hierarchy")
@params.common
def multisig_hierarchy():
    """Describe the multisig levels."""
    from .multisig import hierarchy_description

    console.line()
    print_hierarchy(hierarchy_description())


@multisig.command(name="precompute")
@params.safe_deployment(precompute=True)
@params.multisig
@params.output_file
@params.common
def multisig_precompute(
    chain_id: Optional[int],
    chain_specific: bool,
    custom_proxy_factory: Optional[str],
    custom_singleton: Optional[str],
    fallback: Optional[str],
    level: int,
    name: Optional[str],
    namespace: Optional[str],
    nonce: int,
    output: typing.TextIO | None,
    salt_nonce: Optional[str],
    signers: list[str],
    threshold: Optional[int],
    without_events: bool,
):
    """Compute a multisig Safe address offline."""
    from .exceptions import MultisigConfigError
    from .multisig import build_safe_creation, validate_spec

    spec = get_multisig_spec(level, signers, threshold, name)
    result = validate_spec(spec)
    if not result.valid:
        raise MultisigConfigError(result.errors)
    data = get_safe_deploy_params(
        spec,
        chain_id=chain_id,
        chain_specific=chain_specific,
        custom_proxy_factory=custom_proxy_factory,
        custom_singleton=custom_singleton,
        fallback=fallback,
        namespace=namespace,
        nonce=nonce,
        salt_nonce=salt_nonce,
        without_events=without_events,
    )
    creation = build_safe_creation(spec, data)
    console.line()
    print_safe_deploy_info(spec, data, creation.address)
    if not output:
        console.line()
    output_console = get_output_console(output)
    output_console.print(creation.address)


@multisig.command(name="deploy")
@params.safe_deployment(precompute=False)
@params.multisig
@params.web3tx
@params.authentication
@params.rpc(click.option, required=True)
@click.option("--network", help="network name used in the record [default: chain-ID]")
@params.force
@params.output_dir
@params.common
def multisig_deploy(
    chain_specific: bool,
    custom_proxy_factory: Optional[str],
    custom_singleton: Optional[str],
    expect_signer: Optional[str],
    fallback: Optional[str],
    force: bool,
    gas_limit: Optional[int],
    keyfile: Optional[str],
    ledger: Optional[str],
    level: int,
    max_fee: Optional[int],
    max_pri_fee: Optional[int],
    name: Optional[str],
    namespace: Optional[str],
    network: Optional[str],
    nonce: int,
    output_dir: Optional[str],
    rpc: str,
    salt_nonce: Optional[str],
    signers: list[str],
    threshold: Optional[int],
    trezor: Optional[str],
    without_events: bool,
):
    """Deploy a multisig Safe account.

    The Safe account is deployed with CREATE2, which makes it possible to
    own the same address on different chains. If this is not desirable, pass the
    --chain-specific option to include the chain ID in the CREATE2 salt derivation.
    """
    from .constants import DEFAULT_DEPLOYMENTS_DIR
    from .multisig import build_safe_creation, deploy_multisig, safe_dashboard_url
    from .records import available_filename, multisig_record_filename, write_record

    spec = get_multisig_spec(level, signers, threshold, name)
    txopts = Web3TxOptions(
        gas_limit=gas_limit, max_fee=max_fee, max_pri_fee=max_pri_fee
    )
    chain = get_chain(rpc, txopts)
    data = get_safe_deploy_params(
        spec,
        chain_id=chain.chain_id if chain_specific else None,
        chain_specific=chain_specific,
        custom_proxy_factory=custom_proxy_factory,
        custom_singleton=custom_singleton,
        fallback=fallback,
        namespace=namespace,
        nonce=nonce,
        salt_nonce=salt_nonce,
        without_events=without_events,
    )
    network = network or f"chain-{chain.chain_id}"

    console.line()
    print_safe_deploy_info(spec, data, build_safe_creation(spec, data).address)
    console.line()
    if not force and not Confirm.ask("Deploy Safe account?", default=False):
        raise click.Abort()

    signer = get_authenticated_signer(keyfile, trezor, ledger, expect_signer)
    console.line()
    print_signer_info(repr(signer), signer.address, chain.get_balance(signer.address))
    record = deploy_multisig(chain, signer, spec, data, network)
    directory = output_dir or DEFAULT_DEPLOYMENTS_DIR
    path = write_record(
        record,
        directory,
        available_filename(
            directory,
            lambda millis: multisig_record_filename(spec.level, network, millis),
        ),
    )
    console.line()
    print_kvtable(
        "Safe Deployed",
        f"[{SYMBOL_CHECK} {record.multisig.threshold}-of-"
        f"{len(record.multisig.owners)}]",
        {
            "Safe Address": record.multisig.address,
            "Transaction": record.transaction.hash,
            "Block": str(record.transaction.block_number),
            "Record": path,
            "Dashboard": safe_dashboard_url(record.multisig.address, network),
        },
        border_style="panel_ok",
    )
    output_console = get_output_console()
    output_console.print(record.multisig.address)


@multisig.command(name="check")
@params.multisig_record
@params.rpc(click.option, required=True)
@params.common
def multisig_check(directory: str, level: int, network: Optional[str], rpc: str):
    """Check that every recorded signer can access a deployed Safe.

    The most recent record of the level is used.
    """
    from .multisig import load_multisig_record, safe_dashboard_url, verify_signer_access

    record = load_multisig_record(directory, level, network)
    chain = get_chain(rpc)
    with status("Querying Safe owners..."):
        access = verify_signer_access(chain, record)
    expected = record.multisig.threshold
    console.line()
    print_kvtable(
        record.multisig.name,
        f"[ {record.network} / level {level} ]",
        {
            "Safe Address": record.multisig.address,
            "Deployed": record.timestamp,
            "Threshold": f"{access.threshold} of {len(access.owners)}"
            + ("" if access.threshold == expected else f" (expected {expected})"),
            "Dashboard": safe_dashboard_url(record.multisig.address, record.network),
        },
        {
            f"Signer {i}": f"{signer} "
            + (
                f"[ok]{SYMBOL_CHECK}[/ok]"
                if ok
                else f"[danger]{SYMBOL_CROSS} NOT AN OWNER[/danger]"
            )
            for i, (signer, ok) in enumerate(access.access.items(), start=1)
        },
    )
    if not access.valid or access.threshold != expected:
        raise click.ClickException("Multisig check failed.")


@multisig.command(name="transfer-ownership")
@params.multisig_record
@click.option(
    "--owner",
    metavar="ADDRESS",
    help="new owner instead of the Safe from the latest multisig record",
)
@click.option(
    "--role",
    "roles",
    multiple=True,
    help="role to transfer [default: every role in RECORD]",
)
@params.output_file
@click.argument("record_file", metavar="RECORD", type=click.Path(exists=True))
@params.common
def multisig_transfer_ownership(
    directory: str,
    level: int,
    network: Optional[str],
    output: typing.TextIO | None,
    owner: Optional[str],
    record_file: str,
    roles: list[str],
):
    """Build transferOwnership transactions handing deployed roles to a Safe.

    The transactions are printed as JSON for submission through the Safe.
    """
    from .multisig import load_multisig_record, ownership_transfers
    from .records import load_record

    record = load_record(record_file)
    if owner is None:
        owner = load_multisig_record(directory, level, network).multisig.address
    transfers = ownership_transfers(record, owner, roles)
    console.line()
    print_kvtable(
        "Ownership Transfer",
        f"[ {record.network} / chain {record.chain_id} ]",
        {"New Owner": owner},
        {role: tx.to for role, tx in transfers.items()},
    )
    if not output:
        console.line()
    output_console = get_output_console(output)
    output_console.print(
        get_json_data_renderable(
            {role: tx._asdict() for role, tx in transfers.items()}
        )
    )
