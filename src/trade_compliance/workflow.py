"""Human override decisions for transactions awaiting approval.

Only transactions in ``RequiresOverride`` accept a decision::

    RequiresOverride --approve--> ApprovedWithOverride
    RequiresOverride --reject---> Rejected

Every decision runs under the transaction's store lock, so two approvers
racing on the same transaction produce one success and one
:class:`~trade_compliance.errors.AlreadyResolved`.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Callable, FrozenSet, Iterable, List, Optional

from . import log
from .constants import (
    COMPLIANCE_MANAGER_ROLE,
    AuditEventType,
    OverrideStatus,
    ValidationStatus,
)
from .errors import (
    AlreadyResolved,
    MissingJustification,
    OverrideExpired,
    OverrideNotAllowed,
    UnauthorizedActor,
)
from .ledger import ThresholdLedger
from .models import Actor, AuditEvent, OverrideResult, Transaction
from .repositories import AuditSink, TransactionStore


DEFAULT_MIN_JUSTIFICATION_LENGTH = 20
DEFAULT_MAX_OVERRIDE_AGE = timedelta(hours=168)

RESOLVED_STATUSES = frozenset({ValidationStatus.APPROVED_WITH_OVERRIDE, ValidationStatus.REJECTED})


def _utc_now() -> datetime:
    return datetime.now(UTC)


class OverrideWorkflow:
    """Approve or reject overridable transactions on behalf of authorised actors."""

    def __init__(
        self,
        store: TransactionStore,
        ledger: ThresholdLedger,
        *,
        audit_sink: Optional[AuditSink] = None,
        authorized_roles: Iterable[str] = (COMPLIANCE_MANAGER_ROLE,),
        min_justification_length: int = DEFAULT_MIN_JUSTIFICATION_LENGTH,
        max_override_age: Optional[timedelta] = DEFAULT_MAX_OVERRIDE_AGE,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.audit_sink = audit_sink
        self.authorized_roles: FrozenSet[str] = frozenset(authorized_roles)
        self.min_justification_length = min_justification_length
        self.max_override_age = max_override_age
        self.clock = clock

    def approve(self, transaction_id: str, actor: Actor, justification: str) -> OverrideResult:
        """Approve an override and commit the reservations held for it.

        Args:
            transaction_id (str): Transaction awaiting a decision.
            actor (Actor): Approving user; must hold an authorised role.
            justification (str): Reason for the override, at least
                ``min_justification_length`` characters once stripped.

        Returns:
            OverrideResult: The recorded decision.

        Raises:
            UnauthorizedActor: If ``actor`` lacks an authorised role.
            MissingJustification: If the justification is empty or too short.
            TransactionNotFound: If ``transaction_id`` is unknown.
            AlreadyResolved: If a decision was already recorded.
            OverrideNotAllowed: If the transaction is not awaiting an override.
            OverrideExpired: If the validation is older than the allowed age.
            ReservationConflict: If the held reservations no longer fit, even
                as an override. The transaction is left unchanged.
        """

        self._authorize(actor, "approve")
        reason = self._require_text(justification, self.min_justification_length, "justification")

        with self.store.lock_for(transaction_id):
            transaction = self.store.get(transaction_id)
            self._require_awaiting(transaction)
            now = self.clock()
            self._require_fresh(transaction, now)

            self.ledger.commit(transaction.pending_reservations, allow_override=True)

            transaction.validation_status = ValidationStatus.APPROVED_WITH_OVERRIDE
            transaction.override_status = OverrideStatus.APPROVED
            transaction.override_actor_id = actor.actor_id
            transaction.override_decided_at = now
            transaction.override_justification = reason
            transaction.pending_reservations = []
            self.store.save(transaction)

        log.info("Override approved for transaction '%s' by '%s'", transaction_id, actor.actor_id)
        self._emit(
            AuditEvent(
                event_type=AuditEventType.OVERRIDE_APPROVED,
                entity_id=transaction_id,
                actor_id=actor.actor_id,
                occurred_at=now,
                details={
                    "justification": reason,
                    "violations": [violation.error_code for violation in transaction.violations],
                },
            )
        )
        return self._result(transaction, actor, now)

    def reject(self, transaction_id: str, actor: Actor, reason: str) -> OverrideResult:
        """Reject an override request and drop its held reservations."""

        self._authorize(actor, "reject")
        text = self._require_text(reason, 1, "rejection reason")

        with self.store.lock_for(transaction_id):
            transaction = self.store.get(transaction_id)
            self._require_awaiting(transaction)
            now = self.clock()

            transaction.validation_status = ValidationStatus.REJECTED
            transaction.override_status = OverrideStatus.REJECTED
            transaction.override_actor_id = actor.actor_id
            transaction.override_decided_at = now
            transaction.rejection_reason = text
            transaction.pending_reservations = []
            self.store.save(transaction)

        log.info("Override rejected for transaction '%s' by '%s'", transaction_id, actor.actor_id)
        self._emit(
            AuditEvent(
                event_type=AuditEventType.OVERRIDE_REJECTED,
                entity_id=transaction_id,
                actor_id=actor.actor_id,
                occurred_at=now,
                details={"reason": text},
            )
        )
        return self._result(transaction, actor, now)

    def pending(self) -> List[Transaction]:
        """Transactions awaiting a decision, oldest validation first."""

        waiting = self.store.list_by_status(ValidationStatus.REQUIRES_OVERRIDE)
        return sorted(
            waiting,
            key=lambda transaction: (transaction.validated_at or datetime.min.replace(tzinfo=UTC), transaction.transaction_id),
        )

    def _authorize(self, actor: Actor, action: str) -> None:
        if not (actor.roles & self.authorized_roles):
            log.warning("Actor '%s' is not allowed to %s overrides", actor.actor_id, action)
            raise UnauthorizedActor(
                f"Actor '{actor.actor_id}' lacks an override role ({', '.join(sorted(self.authorized_roles))})"
            )

    @staticmethod
    def _require_text(value: Optional[str], minimum: int, label: str) -> str:
        text = (value or "").strip()
        if not text:
            raise MissingJustification(f"A {label} is required")
        if len(text) < minimum:
            raise MissingJustification(f"The {label} must be at least {minimum} characters long")
        return text

    @staticmethod
    def _require_awaiting(transaction: Transaction) -> None:
        status = transaction.validation_status
        if status in RESOLVED_STATUSES:
            log.warning(
                "Override decision repeated for transaction '%s' (%s)",
                transaction.transaction_id,
                status.value,
            )
            raise AlreadyResolved(
                f"Transaction '{transaction.transaction_id}' was already resolved as {status.value}"
            )
        if status is not ValidationStatus.REQUIRES_OVERRIDE:
            raise OverrideNotAllowed(
                f"Transaction '{transaction.transaction_id}' is {status.value}, not awaiting an override"
            )

    def _require_fresh(self, transaction: Transaction, now: datetime) -> None:
        if not self.max_override_age or transaction.validated_at is None:
            return
        age = now - transaction.validated_at
        if age > self.max_override_age:
            raise OverrideExpired(
                f"Transaction '{transaction.transaction_id}' was validated {age} ago; "
                f"overrides are accepted for {self.max_override_age}"
            )

    def _emit(self, event: AuditEvent) -> None:
        if self.audit_sink is None:
            return
        try:
            self.audit_sink.record(event)
        except Exception as exc:
            log.warning("Audit sink failed to record %s for '%s': %s", event.event_type.value, event.entity_id, exc)

    @staticmethod
    def _result(transaction: Transaction, actor: Actor, decided_at: datetime) -> OverrideResult:
        return OverrideResult(
            transaction_id=transaction.transaction_id,
            status=transaction.validation_status,
            override_status=transaction.override_status,
            actor_id=actor.actor_id,
            decided_at=decided_at,
        )


__all__ = ["OverrideWorkflow", "RESOLVED_STATUSES"]
