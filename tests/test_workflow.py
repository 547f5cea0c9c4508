"""Tests for override approval and rejection."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from trade_compliance.constants import AuditEventType, OverrideStatus, PeriodType, ValidationStatus
from trade_compliance.errors import (
    AlreadyResolved,
    MissingJustification,
    OverrideExpired,
    OverrideNotAllowed,
    ReservationConflict,
    TransactionNotFound,
    UnauthorizedActor,
)
from trade_compliance.ledger import bucket_key
from trade_compliance.models import Actor

JUSTIFICATION = "Hospital ward shortage confirmed by the inspectorate"


@pytest.fixture
def overridable_world(world_factory, morph_mapping, daily_threshold):
    """Uncapped licence coverage plus a daily threshold of 1000 g that allows override up to 150%."""

    return world_factory(
        mappings=[replace(morph_mapping, max_quantity_per_transaction=None)],
        thresholds=[replace(daily_threshold, allow_override=True, max_override_percent=Decimal("150"))],
    )


@pytest.fixture
def awaiting(overridable_world, transaction_factory):
    transaction = transaction_factory([("MORPH-10", "1400")])
    overridable_world.engine.validate(transaction)
    assert transaction.validation_status is ValidationStatus.REQUIRES_OVERRIDE
    return transaction


def day_key(world):
    return bucket_key("THR-MORPH-DAY", "CUST-C", PeriodType.DAILY, world.clock.now)


# ---------------------------------------------------------------------------
# Approve
# ---------------------------------------------------------------------------


def test_approve_records_decision_and_commits_reservations(overridable_world, awaiting, manager):
    world = overridable_world

    result = world.workflow.approve(awaiting.transaction_id, manager, JUSTIFICATION)

    assert result.status is ValidationStatus.APPROVED_WITH_OVERRIDE
    assert result.override_status is OverrideStatus.APPROVED
    assert result.actor_id == manager.actor_id
    assert awaiting.override_justification == JUSTIFICATION
    assert awaiting.override_decided_at == world.clock.now
    assert awaiting.can_proceed
    assert awaiting.pending_reservations == []
    assert world.ledger.committed_total(day_key(world)) == Decimal("1400")
    assert world.audit.events[-1].event_type is AuditEventType.OVERRIDE_APPROVED


def test_second_approval_is_already_resolved_and_commits_once(overridable_world, awaiting, manager):
    world = overridable_world
    world.workflow.approve(awaiting.transaction_id, manager, JUSTIFICATION)

    with pytest.raises(AlreadyResolved):
        world.workflow.approve(awaiting.transaction_id, manager, JUSTIFICATION)

    assert world.ledger.committed_total(day_key(world)) == Decimal("1400")


def test_racing_approvers_produce_one_success(overridable_world, awaiting, manager):
    world = overridable_world
    other = Actor(actor_id="j.bakker", roles=manager.roles)
    barrier = threading.Barrier(2)
    outcomes = []

    def approve(actor):
        barrier.wait()
        try:
            world.workflow.approve(awaiting.transaction_id, actor, JUSTIFICATION)
            outcomes.append("approved")
        except AlreadyResolved:
            outcomes.append("already")

    threads = [threading.Thread(target=approve, args=(actor,)) for actor in (manager, other)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["already", "approved"]
    assert world.ledger.committed_total(day_key(world)) == Decimal("1400")


def test_approve_requires_authorised_role(overridable_world, awaiting):
    clerk = Actor(actor_id="clerk", roles=frozenset({"SalesClerk"}))

    with pytest.raises(UnauthorizedActor):
        overridable_world.workflow.approve(awaiting.transaction_id, clerk, JUSTIFICATION)

    assert awaiting.validation_status is ValidationStatus.REQUIRES_OVERRIDE


@pytest.mark.parametrize("justification", ["", "   ", "too short"])
def test_approve_requires_meaningful_justification(overridable_world, awaiting, manager, justification):
    with pytest.raises(MissingJustification):
        overridable_world.workflow.approve(awaiting.transaction_id, manager, justification)

    assert awaiting.override_status is OverrideStatus.PENDING
    assert overridable_world.ledger.snapshot() == {}


def test_approve_unknown_transaction(overridable_world, manager):
    with pytest.raises(TransactionNotFound):
        overridable_world.workflow.approve("T-MISSING", manager, JUSTIFICATION)


def test_approve_passed_transaction_is_not_allowed(world, transaction_factory, manager):
    transaction = transaction_factory()
    world.engine.validate(transaction)

    with pytest.raises(OverrideNotAllowed):
        world.workflow.approve(transaction.transaction_id, manager, JUSTIFICATION)


def test_approve_after_decision_window_expires(world_factory, transaction_factory, manager):
    world = world_factory(max_override_age=timedelta(hours=24))
    transaction = transaction_factory([("MORPH-10", "600")])
    world.engine.validate(transaction)
    world.clock.now = world.clock.now + timedelta(hours=25)

    with pytest.raises(OverrideExpired):
        world.workflow.approve(transaction.transaction_id, manager, JUSTIFICATION)

    assert transaction.validation_status is ValidationStatus.REQUIRES_OVERRIDE


def test_approve_fails_when_bucket_moved_beyond_override_ceiling(overridable_world, awaiting, transaction_factory, manager):
    """A later pass fills the bucket; the held 1400 g would now reach 1700 g against a 1500 g ceiling."""

    world = overridable_world
    world.engine.validate(transaction_factory([("MORPH-10", "300")]))

    with pytest.raises(ReservationConflict):
        world.workflow.approve(awaiting.transaction_id, manager, JUSTIFICATION)

    assert awaiting.validation_status is ValidationStatus.REQUIRES_OVERRIDE
    assert world.ledger.committed_total(day_key(world)) == Decimal("300")


def test_audit_failure_does_not_undo_approval(overridable_world, awaiting, manager, caplog):
    class BrokenSink:
        def record(self, event):
            raise OSError("audit store unavailable")

    overridable_world.workflow.audit_sink = BrokenSink()

    result = overridable_world.workflow.approve(awaiting.transaction_id, manager, JUSTIFICATION)

    assert result.status is ValidationStatus.APPROVED_WITH_OVERRIDE
    assert "Audit sink failed" in caplog.text


# ---------------------------------------------------------------------------
# Reject and pending
# ---------------------------------------------------------------------------


def test_reject_records_reason_and_discards_reservations(overridable_world, awaiting, manager):
    world = overridable_world

    result = world.workflow.reject(awaiting.transaction_id, manager, "Customer exceeded agreed volume")

    assert result.status is ValidationStatus.REJECTED
    assert awaiting.override_status is OverrideStatus.REJECTED
    assert awaiting.rejection_reason == "Customer exceeded agreed volume"
    assert not awaiting.can_proceed
    assert world.ledger.snapshot() == {}
    assert world.audit.events[-1].event_type is AuditEventType.OVERRIDE_REJECTED


def test_reject_requires_reason(overridable_world, awaiting, manager):
    with pytest.raises(MissingJustification):
        overridable_world.workflow.reject(awaiting.transaction_id, manager, " ")


def test_approve_after_reject_is_already_resolved(overridable_world, awaiting, manager):
    overridable_world.workflow.reject(awaiting.transaction_id, manager, "Not justified")

    with pytest.raises(AlreadyResolved):
        overridable_world.workflow.approve(awaiting.transaction_id, manager, JUSTIFICATION)


def test_pending_lists_oldest_validation_first(world, transaction_factory):
    first = transaction_factory([("MORPH-10", "600")])
    world.engine.validate(first)
    world.clock.now = world.clock.now + timedelta(minutes=5)
    second = transaction_factory([("MORPH-10", "700")])
    world.engine.validate(second)
    world.engine.validate(transaction_factory([("MORPH-10", "100")]))

    assert [item.transaction_id for item in world.workflow.pending()] == [
        first.transaction_id,
        second.transaction_id,
    ]


def test_store_drops_transaction_locks_once_released(world, transaction_factory, manager):
    world.engine.validate(transaction_factory([("MORPH-10", "600")]))
    [pending] = world.workflow.pending()
    world.workflow.reject(pending.transaction_id, manager, "Volume not backed by prescription")

    assert len(world.store._locks) == 0
