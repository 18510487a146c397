"""Cross-chain verification of deployment records.

Equal runtime bytecode at equal addresses is what this module proves. It
says nothing about constructor-time behaviour: two chains can hold identical
runtime code whose storage was initialised differently.
"""

import dataclasses
import glob
import logging
import os
from typing import TYPE_CHECKING, Literal, Optional, Sequence

from .console import make_status_logger
from .constants import DEPLOYMENT_RECORD_PREFIX
from .create2 import runtime_code_hash
from .exceptions import ConfigurationError
from .records import DeploymentRecord, load_record

if TYPE_CHECKING:
    from .chain import Chain

logger = logging.getLogger(__name__)
status = make_status_logger(logger)


@dataclasses.dataclass(frozen=True, kw_only=True)
class RoleComparison:
    role: str
    network: str
    chain_id: int
    reference_address: Optional[str]
    address: Optional[str]
    reference_hash: Optional[str]
    bytecode_hash: Optional[str]

    @property
    def present(self) -> bool:
        return self.reference_address is not None and self.address is not None

    @property
    def address_match(self) -> bool:
        return self.present and self.reference_address == self.address

    @property
    def bytecode_match(self) -> bool:
        return self.present and self.reference_hash == self.bytecode_hash


@dataclasses.dataclass(frozen=True, kw_only=True)
class LiveCheck:
    role: str
    address: str
    expected_hash: str
    actual_hash: Optional[str]

    @property
    def exists(self) -> bool:
        return self.actual_hash is not None

    @property
    def bytecode_match(self) -> bool:
        return self.actual_hash == self.expected_hash


@dataclasses.dataclass(kw_only=True)
class VerificationReport:
    reference: str
    record_count: int
    mode: Literal["compare", "live"]
    comparisons: list[RoleComparison] = dataclasses.field(default_factory=list)
    live_checks: list[LiveCheck] = dataclasses.field(default_factory=list)

    @property
    def valid(self) -> bool:
        if self.mode == "live":
            return all(c.exists and c.bytecode_match for c in self.live_checks)
        return all(c.address_match and c.bytecode_match for c in self.comparisons)

    @property
    def code_divergence(self) -> list[RoleComparison]:
        """Same address, different runtime code. The most severe mismatch."""
        return [
            c for c in self.comparisons if c.address_match and not c.bytecode_match
        ]


def describe(record: DeploymentRecord) -> str:
    return f"{record.network} (chain {record.chain_id})"


def find_record_files(directory: str) -> list[str]:
    if not os.path.isdir(directory):
        raise ConfigurationError(f"Deployments directory '{directory}' not found.")
    pattern = os.path.join(directory, f"{DEPLOYMENT_RECORD_PREFIX}*.json")
    # Lexicographic order fixes which record becomes the reference.
    return sorted(glob.glob(pattern))


def load_records(paths: Sequence[str]) -> list[DeploymentRecord]:
    records: list[DeploymentRecord] = []
    for path in paths:
        record = load_record(path)
        logger.info(f"Loaded {path}: {describe(record)}")
        records.append(record)
    return records


def compare_records(records: Sequence[DeploymentRecord]) -> VerificationReport:
    if len(records) < 2:
        raise ConfigurationError("At least two records are needed for comparison.")
    reference, others = records[0], records[1:]
    roles: list[str] = []
    for record in records:
        roles.extend(role for role in record.contracts if role not in roles)
    report = VerificationReport(
        reference=describe(reference), record_count=len(records), mode="compare"
    )
    for record in others:
        for role in roles:
            ref_contract = reference.contracts.get(role)
            contract = record.contracts.get(role)
            comparison = RoleComparison(
                role=role,
                network=record.network,
                chain_id=record.chain_id,
                reference_address=ref_contract.address if ref_contract else None,
                address=contract.address if contract else None,
                reference_hash=ref_contract.bytecode_hash if ref_contract else None,
                bytecode_hash=contract.bytecode_hash if contract else None,
            )
            if not comparison.present:
                logger.warning(f"Role '{role}' is missing on {describe(record)}")
            report.comparisons.append(comparison)
    return report


def verify_live(record: DeploymentRecord, chain: "Chain") -> VerificationReport:
    if chain.chain_id != record.chain_id:
        raise ConfigurationError(
            f"RPC chain ID {chain.chain_id} does not match record chain ID "
            f"{record.chain_id}."
        )
    report = VerificationReport(
        reference=describe(record), record_count=1, mode="live"
    )
    for role, contract in record.contracts.items():
        with status(f"Fetching code of {role} at {contract.address}..."):
            code = chain.get_code(contract.address)
        report.live_checks.append(
            LiveCheck(
                role=role,
                address=contract.address,
                expected_hash=contract.bytecode_hash,
                actual_hash=runtime_code_hash(code).to_0x_hex() if code else None,
            )
        )
    return report


def verify_deployments(
    records: Sequence[DeploymentRecord], chain: Optional["Chain"] = None
) -> VerificationReport:
    if len(records) == 0:
        raise ConfigurationError("No deployment records found.")
    if len(records) == 1:
        if chain is None:
            raise ConfigurationError(
                "A single record can only be verified against a live chain."
            )
        return verify_live(records[0], chain)
    return compare_records(records)
