"""Turn raw rule outcomes into ordered, typed violations.

Everything here is a pure function of its inputs. The severity table:

================================================  ========  ===========
Condition                                         Severity  Overridable
================================================  ========  ===========
Customer unknown or suspended                     Critical  no
Customer not approved or not GDP qualified        Error     yes
Substance missing from the substance master       Critical  no
No licence has capacity for the substance         Critical  no
Licence coverage only partial                     Error     yes
Threshold exceeded, override allowed and in cap   Error     yes
Threshold exceeded, no override or beyond cap     Critical  no
Transaction count over a frequency threshold      as above  as above
Cross-border rule broken                          Error     no
Threshold within warning band                     Warning   no
================================================  ========  ===========
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from .constants import SEVERITY_RANK, ErrorCode, ValidationStatus, ViolationSeverity
from .coverage import CoverageResult
from .cross_border import CrossBorderFinding
from .ledger import Reservation
from .models import Threshold, TransactionViolation


ZERO = Decimal("0")


@dataclass(frozen=True)
class CustomerFinding:
    error_code: ErrorCode
    account: str
    status: Optional[str] = None


@dataclass(frozen=True)
class SubstanceFinding:
    line_number: int
    substance_code: str


@dataclass(frozen=True)
class CoverageFinding:
    line_number: int
    result: CoverageResult


@dataclass(frozen=True)
class ThresholdFinding:
    threshold: Threshold
    reservation: Reservation
    warning_percent: Decimal
    line_number: Optional[int] = None


@dataclass
class Findings:
    """Raw outcomes collected by one validation pass, in discovery order."""

    customer: List[CustomerFinding] = field(default_factory=list)
    substances: List[SubstanceFinding] = field(default_factory=list)
    coverage: List[CoverageFinding] = field(default_factory=list)
    thresholds: List[ThresholdFinding] = field(default_factory=list)
    cross_border: List[CrossBorderFinding] = field(default_factory=list)
    frequency: List[ThresholdFinding] = field(default_factory=list)


def customer_violation(finding: CustomerFinding) -> TransactionViolation:
    code = finding.error_code
    if code is ErrorCode.CUSTOMER_NOT_APPROVED:
        message = f"Customer '{finding.account}' is not approved (status: {finding.status})"
    elif code is ErrorCode.GDP_QUALIFICATION_INVALID:
        message = f"Customer '{finding.account}' is not GDP qualified (status: {finding.status})"
    elif code is ErrorCode.CUSTOMER_SUSPENDED:
        message = f"Customer '{finding.account}' is suspended"
    else:
        message = f"Customer '{finding.account}' was not found"

    overridable = code in (ErrorCode.CUSTOMER_NOT_APPROVED, ErrorCode.GDP_QUALIFICATION_INVALID)
    return TransactionViolation(
        error_code=code.value,
        message=message,
        severity=ViolationSeverity.ERROR if overridable else ViolationSeverity.CRITICAL,
        can_override=overridable,
    )


def substance_violation(finding: SubstanceFinding) -> TransactionViolation:
    return TransactionViolation(
        error_code=ErrorCode.SUBSTANCE_NOT_FOUND.value,
        message=f"Substance '{finding.substance_code}' is not in the substance master",
        severity=ViolationSeverity.CRITICAL,
        can_override=False,
        line_number=finding.line_number,
        substance_code=finding.substance_code,
    )


def coverage_violation(finding: CoverageFinding) -> Optional[TransactionViolation]:
    result = finding.result
    if result.is_complete:
        return None
    if not result.has_candidates or result.covered == ZERO:
        return TransactionViolation(
            error_code=ErrorCode.NO_LICENCE_COVERAGE.value,
            message=f"No valid licence covers substance '{result.substance_code}'",
            severity=ViolationSeverity.CRITICAL,
            can_override=False,
            line_number=finding.line_number,
            substance_code=result.substance_code,
            limit=result.covered,
            actual=result.required,
        )
    return TransactionViolation(
        error_code=ErrorCode.INSUFFICIENT_LICENCE_COVERAGE.value,
        message=(
            f"Licences cover {result.covered} of {result.required} for substance "
            f"'{result.substance_code}' (short by {result.shortfall})"
        ),
        severity=ViolationSeverity.ERROR,
        can_override=True,
        line_number=finding.line_number,
        substance_code=result.substance_code,
        limit=result.covered,
        actual=result.required,
    )


def threshold_violation(finding: ThresholdFinding) -> Optional[TransactionViolation]:
    threshold = finding.threshold
    reservation = finding.reservation
    period = threshold.period_type.value
    unit = threshold.limit_unit

    if reservation.over_limit:
        overridable = reservation.overridable
        if overridable or not threshold.allow_override:
            detail = ""
        else:
            detail = f"; beyond the maximum override of {threshold.max_override_percent}%"
        return TransactionViolation(
            error_code=ErrorCode.THRESHOLD_EXCEEDED.value,
            message=(
                f"Threshold '{threshold.name}' exceeded: {reservation.new_total} {unit} "
                f"against a {period} limit of {reservation.limit} {unit}{detail}"
            ),
            severity=ViolationSeverity.ERROR if overridable else ViolationSeverity.CRITICAL,
            can_override=overridable,
            line_number=finding.line_number,
            substance_code=threshold.substance_code,
            threshold_id=threshold.threshold_id,
            limit=reservation.limit,
            actual=reservation.new_total,
        )

    if reservation.in_warning_band(finding.warning_percent):
        return TransactionViolation(
            error_code=ErrorCode.THRESHOLD_WARNING.value,
            message=(
                f"Threshold '{threshold.name}' at {reservation.usage_percent:.1f}% of its "
                f"{period} limit ({reservation.new_total} of {reservation.limit} {unit})"
            ),
            severity=ViolationSeverity.WARNING,
            can_override=False,
            line_number=finding.line_number,
            substance_code=threshold.substance_code,
            threshold_id=threshold.threshold_id,
            limit=reservation.limit,
            actual=reservation.new_total,
        )
    return None


def frequency_violation(finding: ThresholdFinding) -> Optional[TransactionViolation]:
    threshold = finding.threshold
    reservation = finding.reservation
    if not reservation.over_limit:
        return None

    overridable = reservation.overridable
    return TransactionViolation(
        error_code=ErrorCode.FREQUENCY_THRESHOLD_EXCEEDED.value,
        message=(
            f"{threshold.name}: {reservation.new_total} transactions exceed the limit of "
            f"{reservation.limit} per {threshold.period_type.value} period"
        ),
        severity=ViolationSeverity.ERROR if overridable else ViolationSeverity.CRITICAL,
        can_override=overridable,
        threshold_id=threshold.threshold_id,
        limit=reservation.limit,
        actual=reservation.new_total,
    )


def cross_border_violation(finding: CrossBorderFinding) -> TransactionViolation:
    return TransactionViolation(
        error_code=finding.error_code.value,
        message=finding.message,
        severity=ViolationSeverity.ERROR,
        can_override=False,
    )


def _display_order(violation: TransactionViolation) -> Tuple[int, bool, int]:
    line = violation.line_number
    return (SEVERITY_RANK[violation.severity], line is None, line or 0)


def classify(findings: Findings) -> List[TransactionViolation]:
    """Classify every finding and order the violations for display.

    Violations are ordered by severity (Critical first), then by line number
    with transaction-level findings last, then by discovery order: customer,
    substance, coverage, threshold, cross-border, frequency. The sort is
    stable, so discovery order is simply the order in which the groups are
    concatenated.

    Args:
        findings (Findings): Raw outcomes of one validation pass.

    Returns:
        list[TransactionViolation]: Deterministically ordered violations.
    """

    discovered: List[TransactionViolation] = [customer_violation(item) for item in findings.customer]
    discovered.extend(substance_violation(item) for item in findings.substances)
    for coverage in findings.coverage:
        violation = coverage_violation(coverage)
        if violation is not None:
            discovered.append(violation)
    for threshold in findings.thresholds:
        violation = threshold_violation(threshold)
        if violation is not None:
            discovered.append(violation)
    discovered.extend(cross_border_violation(item) for item in findings.cross_border)
    for frequency in findings.frequency:
        violation = frequency_violation(frequency)
        if violation is not None:
            discovered.append(violation)
    return sorted(discovered, key=_display_order)


def can_override(violations: Sequence[TransactionViolation]) -> bool:
    """``True`` iff something blocks and every blocking violation is overridable."""

    blocking = [violation for violation in violations if violation.is_blocking]
    return bool(blocking) and all(violation.can_override for violation in blocking)


def final_status(violations: Sequence[TransactionViolation]) -> ValidationStatus:
    if not any(violation.is_blocking for violation in violations):
        return ValidationStatus.PASSED
    if can_override(violations):
        return ValidationStatus.REQUIRES_OVERRIDE
    return ValidationStatus.FAILED


__all__ = [
    "CustomerFinding",
    "SubstanceFinding",
    "CoverageFinding",
    "ThresholdFinding",
    "Findings",
    "customer_violation",
    "substance_violation",
    "coverage_violation",
    "threshold_violation",
    "frequency_violation",
    "cross_border_violation",
    "classify",
    "can_override",
    "final_status",
]
