"""Tests for the validation engine's orchestration and state transitions."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

from trade_compliance.constants import (
    ApprovalStatus,
    AuditEventType,
    BusinessCategory,
    ErrorCode,
    GdpQualificationStatus,
    OverrideStatus,
    PeriodType,
    PermittedActivity,
    ThresholdType,
    TransactionDirection,
    TransactionType,
    ValidationStatus,
    ViolationSeverity,
)
from trade_compliance.engine import most_specific, required_activities
from trade_compliance.errors import (
    InfrastructureFailure,
    InvariantViolation,
    OverrideNotAllowed,
    ReservationConflict,
    ValidationCancelled,
)
from trade_compliance.ledger import LimitSpec, ThresholdLedger, bucket_key
from trade_compliance.models import Threshold

FIXED_NOW = datetime(2026, 3, 10, 9, 30, tzinfo=UTC)


def codes(result):
    return [violation.error_code for violation in result.violations]


@pytest.fixture
def uncapped_mapping(morph_mapping):
    return replace(morph_mapping, max_quantity_per_transaction=None)


# ---------------------------------------------------------------------------
# Reference scenarios
# ---------------------------------------------------------------------------


def test_quantity_within_licence_cap_passes(world, transaction_factory):
    transaction = transaction_factory([("MORPH-10", "300")])

    result = world.engine.validate(transaction)

    assert result.status is ValidationStatus.PASSED
    assert result.is_valid and result.can_proceed and not result.can_override
    assert result.violations == ()
    [usage] = result.licence_usages
    assert (usage.licence_id, usage.covered_quantity) == ("LIC-WDA", Decimal("300"))
    assert transaction.validation_status is ValidationStatus.PASSED
    assert transaction.validated_at == FIXED_NOW
    assert world.store.get(transaction.transaction_id) is transaction


def test_quantity_above_licence_cap_requires_override(world, transaction_factory):
    transaction = transaction_factory([("MORPH-10", "600")])

    result = world.engine.validate(transaction)

    assert result.status is ValidationStatus.REQUIRES_OVERRIDE
    [violation] = result.violations
    assert violation.error_code == ErrorCode.INSUFFICIENT_LICENCE_COVERAGE.value
    assert violation.severity is ViolationSeverity.ERROR
    assert violation.can_override is True
    assert result.can_override is True
    assert transaction.override_status is OverrideStatus.PENDING


def test_substance_without_mapping_fails_terminally(world_factory, transaction_factory, manager):
    world = world_factory(mappings=[])
    transaction = transaction_factory([("MORPH-10", "10")])

    result = world.engine.validate(transaction)

    assert result.status is ValidationStatus.FAILED
    [violation] = result.violations
    assert violation.error_code == ErrorCode.NO_LICENCE_COVERAGE.value
    assert violation.severity is ViolationSeverity.CRITICAL
    assert violation.can_override is False
    assert result.can_override is False
    with pytest.raises(OverrideNotAllowed):
        world.workflow.approve(transaction.transaction_id, manager, "Critical shortage at the hospital ward")


@pytest.mark.parametrize(
    ("allow_override", "losing_status"),
    [(False, ValidationStatus.FAILED), (True, ValidationStatus.REQUIRES_OVERRIDE)],
)
def test_concurrent_transactions_on_same_daily_bucket_never_both_pass(
    world_factory, transaction_factory, uncapped_mapping, daily_threshold, allow_override, losing_status
):
    threshold = replace(daily_threshold, allow_override=allow_override)
    world = world_factory(mappings=[uncapped_mapping], thresholds=[threshold])
    transactions = [transaction_factory([("MORPH-10", "600")]) for _ in range(2)]
    barrier = threading.Barrier(len(transactions))
    results = {}

    def run(transaction):
        barrier.wait()
        results[transaction.transaction_id] = world.engine.validate(transaction)

    threads = [threading.Thread(target=run, args=(transaction,)) for transaction in transactions]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    statuses = {result.status for result in results.values()}
    assert statuses == {ValidationStatus.PASSED, losing_status}
    loser = next(result for result in results.values() if result.status is losing_status)
    assert codes(loser) == [ErrorCode.THRESHOLD_EXCEEDED.value]
    key = bucket_key(threshold.threshold_id, "CUST-C", PeriodType.DAILY, FIXED_NOW)
    assert world.ledger.committed_total(key) == Decimal("600")


def test_outbound_without_destination_fails_on_cross_border(world, transaction_factory):
    transaction = transaction_factory(
        [("MORPH-10", "100")],
        direction=TransactionDirection.OUTBOUND,
        origin_country="NL",
        destination_country=None,
    )

    result = world.engine.validate(transaction)

    [violation] = result.violations
    assert violation.error_code == ErrorCode.MISSING_DESTINATION_COUNTRY.value
    assert violation.severity is ViolationSeverity.ERROR
    assert violation.can_override is False
    assert result.status is ValidationStatus.FAILED


# ---------------------------------------------------------------------------
# Customers and lines
# ---------------------------------------------------------------------------


def test_unknown_customer_fails_without_line_checks(world, transaction_factory):
    result = world.engine.validate(transaction_factory(account="NOPE"))

    assert codes(result) == [ErrorCode.CUSTOMER_NOT_FOUND.value]
    assert result.status is ValidationStatus.FAILED
    assert result.licence_usages == ()


def test_suspended_customer_fails(world_factory, customer_c, transaction_factory):
    world = world_factory(holders=[replace(customer_c, is_suspended=True)])

    result = world.engine.validate(transaction_factory())

    assert codes(result) == [ErrorCode.CUSTOMER_SUSPENDED.value]
    assert result.status is ValidationStatus.FAILED


def test_uncontrolled_lines_need_no_licence(world, transaction_factory):
    transaction = transaction_factory([("PARA-500", "10000"), ("MORPH-10", "50")])

    result = world.engine.validate(transaction)

    assert result.status is ValidationStatus.PASSED
    assert [line.substance_code for line in transaction.lines] == [None, "MORPH"]


def test_licence_usage_aggregates_lines(world, transaction_factory):
    result = world.engine.validate(transaction_factory([("MORPH-10", "300"), ("MORPH-10", "100")]))

    [usage] = result.licence_usages
    assert usage.covered_quantity == Decimal("400")
    assert usage.line_quantities == ((1, Decimal("300")), (2, Decimal("100")))
    assert usage.line_numbers == (1, 2)


def test_per_transaction_cap_is_shared_between_lines(world, transaction_factory):
    result = world.engine.validate(transaction_factory([("MORPH-10", "300"), ("MORPH-10", "300")]))

    [violation] = result.violations
    assert violation.error_code == ErrorCode.INSUFFICIENT_LICENCE_COVERAGE.value
    assert violation.line_number == 2


def test_outbound_requires_export_activity(world_factory, wda_licence, transaction_factory):
    domestic = replace(wda_licence, permitted_activities=PermittedActivity.POSSESS | PermittedActivity.DISTRIBUTE)
    world = world_factory(licences=[domestic])
    transaction = transaction_factory(
        direction=TransactionDirection.OUTBOUND, origin_country="NL", destination_country="DE"
    )

    result = world.engine.validate(transaction)

    assert codes(result) == [ErrorCode.NO_LICENCE_COVERAGE.value]


def test_required_activities_combine_type_and_direction():
    assert required_activities(TransactionType.ORDER, TransactionDirection.OUTBOUND) == (
        PermittedActivity.DISTRIBUTE | PermittedActivity.EXPORT
    )
    assert required_activities(TransactionType.RETURN, TransactionDirection.INTERNAL) == PermittedActivity.POSSESS


# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------


def test_threshold_warning_passes_and_commits(world_factory, uncapped_mapping, daily_threshold, transaction_factory):
    key = bucket_key(daily_threshold.threshold_id, "CUST-C", PeriodType.DAILY, FIXED_NOW)
    world = world_factory(
        mappings=[uncapped_mapping],
        thresholds=[daily_threshold],
        ledger=ThresholdLedger({key: Decimal("600")}),
    )

    result = world.engine.validate(transaction_factory([("MORPH-10", "300")]))

    assert result.status is ValidationStatus.PASSED
    assert codes(result) == [ErrorCode.THRESHOLD_WARNING.value]
    assert world.ledger.committed_total(key) == Decimal("900")


def test_threshold_specific_warning_percent_overrides_default(
    world_factory, uncapped_mapping, daily_threshold, transaction_factory
):
    world = world_factory(
        mappings=[uncapped_mapping],
        thresholds=[replace(daily_threshold, warning_percent=Decimal("25"))],
    )

    result = world.engine.validate(transaction_factory([("MORPH-10", "300")]))

    assert codes(result) == [ErrorCode.THRESHOLD_WARNING.value]


def test_threshold_quantities_are_summed_across_lines(
    world_factory, uncapped_mapping, daily_threshold, transaction_factory
):
    world = world_factory(mappings=[uncapped_mapping], thresholds=[replace(daily_threshold, limit_value=Decimal("500"))])

    result = world.engine.validate(transaction_factory([("MORPH-10", "300"), ("MORPH-10", "300")]))

    [violation] = result.violations
    assert violation.error_code == ErrorCode.THRESHOLD_EXCEEDED.value
    assert violation.actual == Decimal("600")
    assert violation.line_number == 1
    assert result.status is ValidationStatus.FAILED


def test_customer_specific_threshold_beats_substance_threshold(
    world_factory, uncapped_mapping, daily_threshold, transaction_factory
):
    negotiated = replace(daily_threshold, threshold_id="THR-C", limit_value=Decimal("2000"), customer_id="CUST-C")
    world = world_factory(mappings=[uncapped_mapping], thresholds=[daily_threshold, negotiated])

    result = world.engine.validate(transaction_factory([("MORPH-10", "1200")]))

    assert result.status is ValidationStatus.PASSED
    assert bucket_key("THR-C", "CUST-C", PeriodType.DAILY, FIXED_NOW) in world.ledger.snapshot()


def test_thresholds_of_other_periods_still_apply(world_factory, uncapped_mapping, daily_threshold, transaction_factory):
    monthly = replace(
        daily_threshold,
        threshold_id="THR-M",
        limit_value=Decimal("5000"),
        period_type=PeriodType.MONTHLY,
        allow_override=True,
    )
    month_key = bucket_key("THR-M", "CUST-C", PeriodType.MONTHLY, FIXED_NOW)
    world = world_factory(
        mappings=[uncapped_mapping],
        thresholds=[daily_threshold, monthly],
        ledger=ThresholdLedger({month_key: Decimal("4800")}),
    )

    result = world.engine.validate(transaction_factory([("MORPH-10", "300")]))

    assert codes(result) == [ErrorCode.THRESHOLD_EXCEEDED.value]
    assert result.violations[0].threshold_id == "THR-M"
    assert result.status is ValidationStatus.REQUIRES_OVERRIDE
    assert world.ledger.committed_total(month_key) == Decimal("4800")


def test_threshold_for_other_regulatory_list_is_ignored(
    world_factory, uncapped_mapping, daily_threshold, transaction_factory
):
    other_list = replace(daily_threshold, substance_code=None, regulatory_list="OpiumAct-II", limit_value=Decimal("1"))
    world = world_factory(mappings=[uncapped_mapping], thresholds=[other_list])

    result = world.engine.validate(transaction_factory([("MORPH-10", "300")]))

    assert result.status is ValidationStatus.PASSED


def test_threshold_scoped_to_substance_schedule_applies(
    world_factory, uncapped_mapping, daily_threshold, transaction_factory
):
    schedule_wide = replace(daily_threshold, substance_code=None, regulatory_list="OpiumAct-I", limit_value=Decimal("100"))
    world = world_factory(mappings=[uncapped_mapping], thresholds=[schedule_wide])

    result = world.engine.validate(transaction_factory([("MORPH-10", "300")]))

    assert codes(result) == [ErrorCode.THRESHOLD_EXCEEDED.value]
    assert result.violations[0].line_number is None


def test_category_threshold_only_applies_to_its_category(
    world_factory, uncapped_mapping, daily_threshold, transaction_factory
):
    pharmacy_only = replace(
        daily_threshold, customer_category=BusinessCategory.COMMUNITY_PHARMACY, limit_value=Decimal("1")
    )
    world = world_factory(mappings=[uncapped_mapping], thresholds=[pharmacy_only])

    assert world.engine.validate(transaction_factory()).status is ValidationStatus.PASSED


def test_most_specific_keeps_best_scope_per_period(daily_threshold):
    global_daily = replace(daily_threshold, threshold_id="G", substance_code=None)
    customer_daily = replace(daily_threshold, threshold_id="C", customer_id="CUST-C")
    yearly = replace(daily_threshold, threshold_id="Y", period_type=PeriodType.YEARLY)

    selected = most_specific([global_daily, daily_threshold, customer_daily, yearly])

    assert sorted(threshold.threshold_id for threshold in selected) == ["C", "Y"]


def test_inactive_threshold_is_skipped(world_factory, uncapped_mapping, daily_threshold, transaction_factory):
    world = world_factory(
        mappings=[uncapped_mapping], thresholds=[replace(daily_threshold, is_active=False, limit_value=Decimal("1"))]
    )

    assert world.engine.validate(transaction_factory()).status is ValidationStatus.PASSED


# ---------------------------------------------------------------------------
# Two-phase behaviour, failures and guards
# ---------------------------------------------------------------------------


def test_evaluate_then_discard_leaves_ledger_unchanged(
    world_factory, uncapped_mapping, daily_threshold, transaction_factory
):
    world = world_factory(mappings=[uncapped_mapping], thresholds=[daily_threshold])
    transaction = transaction_factory([("MORPH-10", "300")])

    validation = world.engine.evaluate(transaction)

    assert validation.status is ValidationStatus.PASSED
    assert len(validation.reservations) == 1
    assert world.ledger.snapshot() == {}
    assert transaction.validation_status is ValidationStatus.PENDING


def test_failed_validation_commits_nothing(world_factory, uncapped_mapping, daily_threshold, transaction_factory):
    world = world_factory(mappings=[uncapped_mapping], thresholds=[daily_threshold])

    result = world.engine.validate(transaction_factory([("MORPH-10", "1500")]))

    assert result.status is ValidationStatus.FAILED
    assert world.ledger.snapshot() == {}


def test_requires_override_holds_reservations_without_committing(
    world_factory, uncapped_mapping, daily_threshold, transaction_factory
):
    world = world_factory(mappings=[uncapped_mapping], thresholds=[replace(daily_threshold, allow_override=True)])
    transaction = transaction_factory([("MORPH-10", "1500")])

    world.engine.validate(transaction)

    assert transaction.validation_status is ValidationStatus.REQUIRES_OVERRIDE
    assert [reservation.new_total for reservation in transaction.pending_reservations] == [Decimal("1500")]
    assert world.ledger.snapshot() == {}


def test_collaborator_failure_aborts_without_side_effects(world, transaction_factory):
    world.engine.products = Mock(resolve_substance=Mock(side_effect=ConnectionError("product master down")))
    transaction = transaction_factory()

    with pytest.raises(InfrastructureFailure) as excinfo:
        world.engine.validate(transaction)

    assert excinfo.value.operation == "ProductRepository.resolve_substance"
    assert excinfo.value.error_code is ErrorCode.INTERNAL_ERROR
    assert transaction.validation_status is ValidationStatus.PENDING
    assert transaction.transaction_id not in world.store
    assert world.ledger.snapshot() == {}
    assert world.audit.events == []


def test_cancellation_before_commit_discards_work(world, transaction_factory):
    cancel = threading.Event()
    cancel.set()
    transaction = transaction_factory()

    with pytest.raises(ValidationCancelled):
        world.engine.validate(transaction, cancel=cancel)

    assert transaction.validation_status is ValidationStatus.PENDING
    assert world.ledger.snapshot() == {}


def test_commit_conflicts_give_up_after_retries(world_factory, transaction_factory):
    class AlwaysConflicting(ThresholdLedger):
        attempts = 0

        def commit(self, reservations, *, allow_override=False):
            type(self).attempts += 1
            raise ReservationConflict("bucket moved")

    world = world_factory(ledger=AlwaysConflicting(), max_commit_retries=2)
    transaction = transaction_factory()

    with pytest.raises(ReservationConflict):
        world.engine.validate(transaction)

    assert AlwaysConflicting.attempts == 3
    assert transaction.validation_status is ValidationStatus.PENDING


def test_validating_twice_is_rejected(world, transaction_factory):
    transaction = transaction_factory()
    world.engine.validate(transaction)

    with pytest.raises(InvariantViolation):
        world.engine.validate(transaction)


def test_reusing_a_recorded_transaction_id_is_rejected(world, transaction_factory):
    world.engine.validate(transaction_factory(transaction_id="T-DUP"))

    with pytest.raises(InvariantViolation):
        world.engine.validate(transaction_factory(transaction_id="T-DUP"))


def test_audit_event_emitted_for_each_validation(world, transaction_factory):
    transaction = transaction_factory()

    world.engine.validate(transaction)

    [event] = world.audit.events
    assert event.event_type is AuditEventType.TRANSACTION_VALIDATED
    assert event.entity_id == transaction.transaction_id
    assert event.details["status"] == ValidationStatus.PASSED.value


def test_audit_sink_failure_does_not_fail_validation(world, transaction_factory, caplog):
    world.engine.audit_sink = Mock(record=Mock(side_effect=RuntimeError("sink offline")))

    result = world.engine.validate(transaction_factory())

    assert result.status is ValidationStatus.PASSED
    assert "Audit sink failed" in caplog.text


def test_validation_time_is_reported(world, transaction_factory):
    assert world.engine.validate(transaction_factory()).validation_time_ms >= 0


def test_mapping_period_cap_is_committed_on_pass(world_factory, morph_mapping, transaction_factory):
    capped = replace(
        morph_mapping,
        max_quantity_per_transaction=None,
        max_quantity_per_period=Decimal("1000"),
        period_type=PeriodType.MONTHLY,
    )
    world = world_factory(mappings=[capped])

    world.engine.validate(transaction_factory([("MORPH-10", "400")]))

    spec = LimitSpec.from_mapping(capped)
    key = bucket_key(spec.limit_id, "CUST-C", PeriodType.MONTHLY, FIXED_NOW)
    assert world.ledger.committed_total(key) == Decimal("400")


def test_ignores_threshold_defined_for_other_substance(world_factory, uncapped_mapping, transaction_factory):
    codeine = Threshold(
        threshold_id="THR-COD",
        name="Codeine daily",
        limit_value=Decimal("1"),
        period_type=PeriodType.DAILY,
        substance_code="CODEINE",
    )
    world = world_factory(mappings=[uncapped_mapping], thresholds=[codeine])

    assert world.engine.validate(transaction_factory()).status is ValidationStatus.PASSED


def test_exhausted_mapping_period_cap_fails_without_override(world_factory, morph_mapping, transaction_factory, manager):
    capped = replace(
        morph_mapping,
        max_quantity_per_transaction=None,
        max_quantity_per_period=Decimal("1000"),
        period_type=PeriodType.MONTHLY,
    )
    world = world_factory(mappings=[capped])
    assert world.engine.validate(transaction_factory([("MORPH-10", "1000")])).status is ValidationStatus.PASSED

    transaction = transaction_factory([("MORPH-10", "100")])
    result = world.engine.validate(transaction)

    assert result.status is ValidationStatus.FAILED
    [violation] = result.violations
    assert violation.error_code == ErrorCode.NO_LICENCE_COVERAGE.value
    assert violation.severity is ViolationSeverity.CRITICAL
    assert not violation.can_override
    assert result.licence_usages == ()
    with pytest.raises(OverrideNotAllowed):
        world.workflow.approve(transaction.transaction_id, manager, "Stock needed for the hospital ward")
    key = bucket_key(LimitSpec.from_mapping(capped).limit_id, "CUST-C", PeriodType.MONTHLY, FIXED_NOW)
    assert world.ledger.committed_total(key) == Decimal("1000")


# ---------------------------------------------------------------------------
# Customer qualification, substance master and frequency thresholds
# ---------------------------------------------------------------------------


def test_unapproved_customer_requires_override(world_factory, customer_c, transaction_factory, manager):
    world = world_factory(holders=[replace(customer_c, approval_status=ApprovalStatus.PENDING)])
    transaction = transaction_factory()

    result = world.engine.validate(transaction)

    assert result.status is ValidationStatus.REQUIRES_OVERRIDE
    [violation] = result.violations
    assert violation.error_code == ErrorCode.CUSTOMER_NOT_APPROVED.value
    assert violation.severity is ViolationSeverity.ERROR
    assert "Pending" in violation.message
    approval = world.workflow.approve(transaction.transaction_id, manager, "Onboarding file signed off today")
    assert approval.status is ValidationStatus.APPROVED_WITH_OVERRIDE


@pytest.mark.parametrize(
    ("category", "expected"),
    [
        (BusinessCategory.WHOLESALER_EU, [ErrorCode.GDP_QUALIFICATION_INVALID.value]),
        (BusinessCategory.COMMUNITY_PHARMACY, [ErrorCode.GDP_QUALIFICATION_INVALID.value]),
        (BusinessCategory.VETERINARIAN, []),
        (BusinessCategory.RESEARCH_INSTITUTION, []),
    ],
)
def test_gdp_qualification_only_checked_for_distribution_categories(
    world_factory, customer_c, transaction_factory, category, expected
):
    holder = replace(customer_c, category=category, gdp_status=GdpQualificationStatus.UNDER_REVIEW)
    world = world_factory(holders=[holder])

    result = world.engine.validate(transaction_factory())

    assert codes(result) == expected
    if expected:
        assert result.status is ValidationStatus.REQUIRES_OVERRIDE
        assert result.violations[0].can_override


def test_suspension_outranks_qualification_findings(world_factory, customer_c, transaction_factory):
    holder = replace(customer_c, is_suspended=True, approval_status=ApprovalStatus.REJECTED)
    world = world_factory(holders=[holder])

    assert codes(world.engine.validate(transaction_factory())) == [ErrorCode.CUSTOMER_SUSPENDED.value]


def test_substance_missing_from_master_fails_terminally(world_factory, transaction_factory, manager):
    world = world_factory(products={("MORPH-10", "nl01"): "MORPHX"})
    transaction = transaction_factory([("MORPH-10", "100")])

    result = world.engine.validate(transaction)

    assert result.status is ValidationStatus.FAILED
    [violation] = result.violations
    assert violation.error_code == ErrorCode.SUBSTANCE_NOT_FOUND.value
    assert violation.severity is ViolationSeverity.CRITICAL
    assert (violation.line_number, violation.substance_code) == (1, "MORPHX")
    assert result.licence_usages == ()
    with pytest.raises(OverrideNotAllowed):
        world.workflow.approve(transaction.transaction_id, manager, "Substance code typo in the ERP")


@pytest.fixture
def daily_frequency():
    return Threshold(
        threshold_id="THR-FREQ-DAY",
        name="Orders per day",
        limit_value=Decimal("2"),
        period_type=PeriodType.DAILY,
        threshold_type=ThresholdType.FREQUENCY,
        allow_override=True,
    )


def test_frequency_threshold_counts_transactions_per_period(
    world_factory, daily_frequency, transaction_factory, manager
):
    world = world_factory(thresholds=[daily_frequency])
    for _ in range(2):
        assert world.engine.validate(transaction_factory([("PARA-500", "1")])).status is ValidationStatus.PASSED

    third = transaction_factory([("PARA-500", "1")])
    result = world.engine.validate(third)

    assert result.status is ValidationStatus.REQUIRES_OVERRIDE
    [violation] = result.violations
    assert violation.error_code == ErrorCode.FREQUENCY_THRESHOLD_EXCEEDED.value
    assert (violation.threshold_id, violation.limit, violation.actual) == ("THR-FREQ-DAY", Decimal("2"), Decimal("3"))
    key = bucket_key("THR-FREQ-DAY", "CUST-C", PeriodType.DAILY, FIXED_NOW)
    assert world.ledger.committed_total(key) == Decimal("2")

    world.workflow.approve(third.transaction_id, manager, "Emergency restock agreed with the pharmacist")
    assert world.ledger.committed_total(key) == Decimal("3")


def test_frequency_threshold_without_override_is_critical(world_factory, daily_frequency, transaction_factory):
    world = world_factory(thresholds=[replace(daily_frequency, limit_value=Decimal("1"), allow_override=False)])
    world.engine.validate(transaction_factory([("PARA-500", "1")]))

    result = world.engine.validate(transaction_factory([("PARA-500", "1")]))

    assert result.status is ValidationStatus.FAILED
    assert result.violations[0].severity is ViolationSeverity.CRITICAL


def test_failed_transactions_are_not_counted_for_frequency(world_factory, daily_frequency, transaction_factory):
    world = world_factory(thresholds=[replace(daily_frequency, limit_value=Decimal("1"))])
    failed = world.engine.validate(
        transaction_factory(direction=TransactionDirection.OUTBOUND, destination_country=None)
    )
    assert failed.status is ValidationStatus.FAILED

    assert world.engine.validate(transaction_factory()).status is ValidationStatus.PASSED


def test_frequency_threshold_ignores_quantity_checks(world_factory, daily_frequency, uncapped_mapping, transaction_factory):
    world = world_factory(mappings=[uncapped_mapping], thresholds=[replace(daily_frequency, substance_code="MORPH")])

    result = world.engine.validate(transaction_factory([("MORPH-10", "5000")]))

    assert result.status is ValidationStatus.PASSED
    key = bucket_key("THR-FREQ-DAY", "CUST-C", PeriodType.DAILY, FIXED_NOW)
    assert world.ledger.committed_total(key) == Decimal("1")
