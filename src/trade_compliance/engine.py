"""Orchestration of a single transaction validation.

A validation pass resolves the holder and each line's substance, allocates
licence coverage, evaluates every applicable threshold against the ledger,
checks the cross-border rules, counts the transaction against the frequency
thresholds and classifies the findings. Nothing is written
to the ledger until the final status is known:

* ``Passed`` commits every reservation of the pass. If a concurrent commit
  got there first the pass is re-evaluated against the new totals.
* ``RequiresOverride`` keeps the reservations on the transaction so an
  approval can commit them later.
* ``Failed`` discards them.
"""

from __future__ import annotations

import threading
import time
from contextlib import nullcontext
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Callable, ContextManager, Dict, Iterable, List, Optional, Tuple, TypeVar

from . import classifier, log
from .classifier import CoverageFinding, CustomerFinding, Findings, SubstanceFinding, ThresholdFinding
from .constants import (
    AuditEventType,
    ErrorCode,
    OverrideStatus,
    PermittedActivity,
    TransactionDirection,
    TransactionType,
    ValidationStatus,
)
from .coverage import CoverageResult, LicenceCoverageMatcher
from .cross_border import CrossBorderPolicy
from .errors import (
    ComplianceError,
    InfrastructureFailure,
    InvariantViolation,
    ReservationConflict,
    ValidationCancelled,
)
from .ledger import LimitSpec, Reservation, ThresholdLedger
from .models import (
    AuditEvent,
    Holder,
    LicenceUsage,
    Threshold,
    Transaction,
    TransactionLine,
    TransactionValidationResult,
    TransactionViolation,
    utc_date,
)
from .repositories import (
    AuditSink,
    CorridorRepository,
    CustomerRepository,
    LicenceRepository,
    ProductRepository,
    ThresholdRepository,
    TransactionStore,
)


ZERO = Decimal("0")
ONE = Decimal("1")
DEFAULT_WARNING_PERCENT = Decimal("80")
DEFAULT_MAX_COMMIT_RETRIES = 3

T = TypeVar("T")

TYPE_ACTIVITIES: Dict[TransactionType, PermittedActivity] = {
    TransactionType.ORDER: PermittedActivity.DISTRIBUTE,
    TransactionType.SHIPMENT: PermittedActivity.DISTRIBUTE,
    TransactionType.RETURN: PermittedActivity.POSSESS,
    TransactionType.TRANSFER: PermittedActivity.POSSESS | PermittedActivity.STORE,
}

DIRECTION_ACTIVITIES: Dict[TransactionDirection, PermittedActivity] = {
    TransactionDirection.INTERNAL: PermittedActivity.NONE,
    TransactionDirection.INBOUND: PermittedActivity.IMPORT,
    TransactionDirection.OUTBOUND: PermittedActivity.EXPORT,
}


def required_activities(
    transaction_type: TransactionType, direction: TransactionDirection
) -> PermittedActivity:
    """Activities a covering licence must permit for this kind of movement."""

    return TYPE_ACTIVITIES[transaction_type] | DIRECTION_ACTIVITIES[direction]


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class _ThresholdTally:
    threshold: Threshold
    quantity: Decimal = ZERO
    line_numbers: List[int] = field(default_factory=list)


@dataclass
class ValidationPass:
    """Everything one evaluation of a transaction produced."""

    lines: List[TransactionLine]
    findings: Findings
    reservations: List[Reservation]
    licence_usages: List[LicenceUsage]
    violations: List[TransactionViolation]
    status: ValidationStatus


class ValidationEngine:
    """Validate transactions against licences, thresholds and corridors."""

    def __init__(
        self,
        *,
        licences: LicenceRepository,
        thresholds: ThresholdRepository,
        customers: CustomerRepository,
        products: ProductRepository,
        corridors: CorridorRepository,
        ledger: ThresholdLedger,
        store: Optional[TransactionStore] = None,
        audit_sink: Optional[AuditSink] = None,
        max_commit_retries: int = DEFAULT_MAX_COMMIT_RETRIES,
        default_warning_percent: Decimal = DEFAULT_WARNING_PERCENT,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.thresholds = thresholds
        self.customers = customers
        self.products = products
        self.ledger = ledger
        self.store = store
        self.audit_sink = audit_sink
        self.max_commit_retries = max_commit_retries
        self.default_warning_percent = default_warning_percent
        self.clock = clock
        self.matcher = LicenceCoverageMatcher(licences, ledger)
        self.cross_border = CrossBorderPolicy(corridors)

    def validate(
        self, transaction: Transaction, *, cancel: Optional[threading.Event] = None
    ) -> TransactionValidationResult:
        """Validate ``transaction`` and record the outcome on it.

        Args:
            transaction (Transaction): A transaction in ``Pending`` state.
            cancel (threading.Event | None): Checked between lines and before
                the ledger commit. Once the commit has started it completes.

        Returns:
            TransactionValidationResult: Status, violations, licence usages and
                the elapsed validation time.

        Raises:
            InvariantViolation: If the transaction was already validated.
            InfrastructureFailure: If a collaborator lookup failed. Nothing is
                committed and the transaction stays ``Pending``.
            ValidationCancelled: If ``cancel`` was set before the commit.
            ReservationConflict: If the commit kept losing to concurrent
                commits after every retry.
        """

        started = time.perf_counter()
        with self._transaction_lock(transaction.transaction_id):
            if self.store is not None and transaction.transaction_id in self.store:
                if self.store.get(transaction.transaction_id) is not transaction:
                    raise InvariantViolation(
                        f"Transaction id '{transaction.transaction_id}' is already recorded"
                    )
            if transaction.validation_status is not ValidationStatus.PENDING:
                raise InvariantViolation(
                    f"Transaction '{transaction.transaction_id}' was already validated "
                    f"({transaction.validation_status.value})"
                )

            validation = self._evaluate_and_commit(transaction, cancel)
            self._apply(transaction, validation)
            if self.store is not None:
                self.store.save(transaction)

        elapsed_ms = (time.perf_counter() - started) * 1000
        self._log_outcome(transaction, validation, elapsed_ms)
        self._emit(
            AuditEvent(
                event_type=AuditEventType.TRANSACTION_VALIDATED,
                entity_id=transaction.transaction_id,
                actor_id=None,
                occurred_at=transaction.validated_at or self.clock(),
                details={
                    "status": validation.status.value,
                    "violations": [violation.error_code for violation in validation.violations],
                    "external_reference": transaction.external_reference,
                },
            )
        )

        return TransactionValidationResult(
            transaction_id=transaction.transaction_id,
            status=validation.status,
            is_valid=validation.status is ValidationStatus.PASSED,
            can_proceed=transaction.can_proceed,
            can_override=transaction.can_override,
            violations=tuple(validation.violations),
            licence_usages=tuple(validation.licence_usages),
            validation_time_ms=elapsed_ms,
        )

    def _transaction_lock(self, transaction_id: str) -> ContextManager[Any]:
        if self.store is None:
            return nullcontext()
        return self.store.lock_for(transaction_id)

    def _evaluate_and_commit(
        self, transaction: Transaction, cancel: Optional[threading.Event]
    ) -> ValidationPass:
        conflicts = 0
        while True:
            validation = self.evaluate(transaction, cancel=cancel)
            if validation.status is not ValidationStatus.PASSED:
                return validation

            _check_cancel(cancel, transaction.transaction_id)
            try:
                self.ledger.commit(validation.reservations)
            except ReservationConflict:
                conflicts += 1
                if conflicts > self.max_commit_retries:
                    log.error(
                        "Giving up on transaction '%s' after %d ledger conflicts",
                        transaction.transaction_id,
                        conflicts,
                    )
                    raise
                log.warning(
                    "Ledger conflict for transaction '%s'; re-evaluating (attempt %d of %d)",
                    transaction.transaction_id,
                    conflicts,
                    self.max_commit_retries,
                )
                continue
            return validation

    def evaluate(
        self, transaction: Transaction, *, cancel: Optional[threading.Event] = None
    ) -> ValidationPass:
        """Run every check without touching the ledger or the transaction.

        The returned pass holds the uncommitted reservations; discarding it
        leaves all ledger totals exactly as they were.
        """

        findings = Findings()
        lines = list(transaction.lines)
        reservations: List[Reservation] = []
        usages: List[LicenceUsage] = []

        holder = self._guard("CustomerRepository.resolve", self.customers.resolve,
                             transaction.customer_account, transaction.data_area_id)
        if holder is None:
            findings.customer.append(CustomerFinding(ErrorCode.CUSTOMER_NOT_FOUND, transaction.customer_account))
        elif holder.is_suspended:
            findings.customer.append(CustomerFinding(ErrorCode.CUSTOMER_SUSPENDED, transaction.customer_account))
        else:
            findings.customer.extend(_qualification_findings(holder, transaction.customer_account))
            lines, reservations, usages = self._check_lines(transaction, holder, findings, cancel)

        crossing = self._guard(
            "CorridorRepository.is_permitted",
            self.cross_border.validate,
            transaction.direction,
            transaction.origin_country,
            transaction.destination_country,
            holder.category if holder is not None else None,
        )
        if crossing is not None:
            findings.cross_border.append(crossing)

        if holder is not None and not holder.is_suspended:
            findings.frequency.extend(self._check_frequency(holder, transaction.transaction_date))
            reservations.extend(finding.reservation for finding in findings.frequency)

        violations = classifier.classify(findings)
        return ValidationPass(
            lines=lines,
            findings=findings,
            reservations=reservations,
            licence_usages=usages,
            violations=violations,
            status=classifier.final_status(violations),
        )

    def _check_lines(
        self,
        transaction: Transaction,
        holder: Holder,
        findings: Findings,
        cancel: Optional[threading.Event],
    ) -> Tuple[List[TransactionLine], List[Reservation], List[LicenceUsage]]:
        activities = required_activities(transaction.transaction_type, transaction.direction)
        as_of = transaction.transaction_date
        consumed: Dict[str, Decimal] = {}
        reservations: List[Reservation] = []
        coverage_by_line: List[Tuple[TransactionLine, CoverageResult]] = []
        resolved_lines: List[TransactionLine] = []

        for line in sorted(transaction.lines, key=lambda item: item.line_number):
            _check_cancel(cancel, transaction.transaction_id)
            substance = self._guard(
                "ProductRepository.resolve_substance",
                self.products.resolve_substance,
                line.item_number,
                line.data_area_id,
            )
            line = replace(line, substance_code=substance)
            resolved_lines.append(line)
            if substance is None:
                log.debug("Line %d (%s) is not a controlled product", line.line_number, line.item_number)
                continue
            if not self._guard("ProductRepository.substance_exists", self.products.substance_exists, substance):
                log.warning("Line %d resolves to unknown substance '%s'", line.line_number, substance)
                findings.substances.append(SubstanceFinding(line.line_number, substance))
                continue

            result = self._guard(
                "LicenceCoverageMatcher.find_coverage",
                self.matcher.find_coverage,
                holder,
                substance,
                as_of,
                line.quantity,
                required_activities=activities,
                consumed=consumed,
            )
            findings.coverage.append(CoverageFinding(line_number=line.line_number, result=result))
            reservations.extend(
                allocation.reservation for allocation in result.allocations if allocation.reservation is not None
            )
            coverage_by_line.append((line, result))

        _check_cancel(cancel, transaction.transaction_id)
        findings.thresholds.extend(self._check_thresholds(holder, coverage_by_line, as_of))
        reservations.extend(finding.reservation for finding in findings.thresholds)
        return resolved_lines, reservations, _licence_usages(coverage_by_line)

    def _check_thresholds(
        self,
        holder: Holder,
        coverage_by_line: List[Tuple[TransactionLine, CoverageResult]],
        as_of: datetime,
    ) -> List[ThresholdFinding]:
        day = utc_date(as_of)
        tallies: Dict[str, _ThresholdTally] = {}
        selected_by_substance: Dict[str, List[Threshold]] = {}

        # Quantities are summed per threshold, so a threshold shared by several
        # substances (or lines) is checked once against the combined total.
        for line, result in coverage_by_line:
            substance = result.substance_code
            code = substance.upper()
            if code not in selected_by_substance:
                licence_type_id = next(
                    (allocation.licence.licence_type_id for allocation in result.allocations), None
                )
                applicable = self._guard(
                    "ThresholdRepository.find_applicable",
                    self.thresholds.find_applicable,
                    substance,
                    holder,
                    licence_type_id,
                )
                listing = self._guard(
                    "ProductRepository.regulatory_list", self.products.regulatory_list, substance
                )
                selected_by_substance[code] = most_specific(
                    threshold
                    for threshold in applicable
                    if threshold.is_effective(day)
                    and (threshold.regulatory_list is None or threshold.regulatory_list == listing)
                )

            for threshold in selected_by_substance[code]:
                tally = tallies.setdefault(threshold.threshold_id, _ThresholdTally(threshold))
                tally.quantity += line.quantity
                tally.line_numbers.append(line.line_number)

        findings: List[ThresholdFinding] = []
        for tally in tallies.values():
            threshold = tally.threshold
            reservation = self.ledger.evaluate(
                LimitSpec.from_threshold(threshold), holder.customer_id, as_of, tally.quantity
            )
            warning_percent = threshold.warning_percent
            if warning_percent is None:
                warning_percent = self.default_warning_percent
            findings.append(
                ThresholdFinding(
                    threshold=threshold,
                    reservation=reservation,
                    warning_percent=warning_percent,
                    line_number=min(tally.line_numbers) if threshold.substance_code else None,
                )
            )
        return findings

    def _check_frequency(self, holder: Holder, as_of: datetime) -> List[ThresholdFinding]:
        """Count this transaction against the holder's frequency thresholds.

        Every transaction that proceeds adds one to each bucket, so the
        candidate total is the number of transactions in the period including
        this one.
        """

        day = utc_date(as_of)
        applicable = self._guard("ThresholdRepository.find_frequency", self.thresholds.find_frequency, holder)
        findings: List[ThresholdFinding] = []
        for threshold in most_specific(threshold for threshold in applicable if threshold.is_effective(day)):
            reservation = self.ledger.evaluate(LimitSpec.from_threshold(threshold), holder.customer_id, as_of, ONE)
            findings.append(
                ThresholdFinding(
                    threshold=threshold,
                    reservation=reservation,
                    warning_percent=threshold.warning_percent or self.default_warning_percent,
                )
            )
        return findings

    def _guard(self, operation: str, call: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return call(*args, **kwargs)
        except ComplianceError:
            raise
        except Exception as exc:
            log.error("Collaborator call '%s' failed: %s", operation, exc)
            raise InfrastructureFailure(operation, exc) from exc

    def _apply(self, transaction: Transaction, validation: ValidationPass) -> None:
        transaction.lines = validation.lines
        transaction.validation_status = validation.status
        transaction.violations = list(validation.violations)
        transaction.licence_usages = list(validation.licence_usages)
        transaction.validated_at = self.clock()
        if validation.status is ValidationStatus.REQUIRES_OVERRIDE:
            transaction.override_status = OverrideStatus.PENDING
            transaction.pending_reservations = list(validation.reservations)
        else:
            transaction.override_status = OverrideStatus.NONE
            transaction.pending_reservations = []

    def _log_outcome(self, transaction: Transaction, validation: ValidationPass, elapsed_ms: float) -> None:
        codes = ", ".join(violation.error_code for violation in validation.violations) or "none"
        if validation.status is ValidationStatus.PASSED:
            log.info(
                "Transaction '%s' passed in %.1f ms (findings: %s)",
                transaction.transaction_id,
                elapsed_ms,
                codes,
            )
        else:
            log.warning(
                "Transaction '%s' %s in %.1f ms (violations: %s)",
                transaction.transaction_id,
                validation.status.value,
                elapsed_ms,
                codes,
            )

    def _emit(self, event: AuditEvent) -> None:
        if self.audit_sink is None:
            return
        try:
            self.audit_sink.record(event)
        except Exception as exc:
            log.warning("Audit sink failed to record %s for '%s': %s", event.event_type.value, event.entity_id, exc)


def most_specific(thresholds: Iterable[Threshold]) -> List[Threshold]:
    """Keep, per period type, only the thresholds of the most specific scope.

    Customer-specific thresholds beat category thresholds, which beat
    substance-only thresholds, which beat global ones. Thresholds of different
    period types all remain.
    """

    by_period: Dict[Any, List[Threshold]] = {}
    for threshold in thresholds:
        by_period.setdefault(threshold.period_type, []).append(threshold)

    selected: List[Threshold] = []
    for group in by_period.values():
        best = max(threshold.scope_rank for threshold in group)
        selected.extend(threshold for threshold in group if threshold.scope_rank == best)
    return selected


def _qualification_findings(holder: Holder, account: str) -> List[CustomerFinding]:
    findings: List[CustomerFinding] = []
    if not holder.is_approved:
        findings.append(CustomerFinding(ErrorCode.CUSTOMER_NOT_APPROVED, account, holder.approval_status.value))
    if holder.requires_gdp_qualification and not holder.is_gdp_qualified:
        findings.append(CustomerFinding(ErrorCode.GDP_QUALIFICATION_INVALID, account, holder.gdp_status.value))
    return findings


def _licence_usages(coverage_by_line: List[Tuple[TransactionLine, CoverageResult]]) -> List[LicenceUsage]:
    order: List[str] = []
    numbers: Dict[str, str] = {}
    covered: Dict[str, Decimal] = {}
    lines: Dict[str, List[Tuple[int, Decimal]]] = {}
    substances: Dict[str, List[str]] = {}

    for line, result in coverage_by_line:
        for allocation in result.allocations:
            licence_id = allocation.licence.licence_id
            if licence_id not in covered:
                order.append(licence_id)
                numbers[licence_id] = allocation.licence.licence_number
                covered[licence_id] = ZERO
                lines[licence_id] = []
                substances[licence_id] = []
            covered[licence_id] += allocation.quantity
            lines[licence_id].append((line.line_number, allocation.quantity))
            if result.substance_code not in substances[licence_id]:
                substances[licence_id].append(result.substance_code)

    return [
        LicenceUsage(
            licence_id=licence_id,
            licence_number=numbers[licence_id],
            covered_quantity=covered[licence_id],
            line_quantities=tuple(lines[licence_id]),
            substance_codes=tuple(substances[licence_id]),
        )
        for licence_id in order
    ]


def _check_cancel(cancel: Optional[threading.Event], transaction_id: str) -> None:
    if cancel is not None and cancel.is_set():
        log.info("Validation of transaction '%s' cancelled before commit", transaction_id)
        raise ValidationCancelled(f"Validation of transaction '{transaction_id}' was cancelled")


__all__ = [
    "ValidationEngine",
    "ValidationPass",
    "required_activities",
    "most_specific",
    "TYPE_ACTIVITIES",
    "DIRECTION_ACTIVITIES",
]
