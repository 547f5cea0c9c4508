"""Cumulative consumption ledger for period-based quantity limits.

The ledger tracks, per ``(limit, customer, period bucket)``, the quantity that
has been *committed* by transactions whose final disposition allows them to
proceed. Checking is split into two phases:

* :meth:`ThresholdLedger.evaluate` is a pure read that computes the
  hypothetical total a transaction would produce. Nothing is stored.
* :meth:`ThresholdLedger.commit` re-checks and applies a set of evaluated
  reservations atomically. Each bucket key has its own lock; a commit takes
  the locks of every bucket it touches in key order, so commits to the same
  bucket are linearized while unrelated buckets never contend. A bucket lock
  is dropped once no commit holds or awaits it.

Period buckets are derived from the UTC date of the transaction. A new day,
week, month or year produces a new key, which is how counters "reset"; no
sweeper or scheduled job exists.
"""

from __future__ import annotations

import threading
from contextlib import ExitStack
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from . import log
from .constants import PeriodType
from .errors import ReservationConflict
from .locking import KeyedLocks
from .models import LicenceSubstanceMapping, Threshold, utc_date


ZERO = Decimal("0")
HUNDRED = Decimal("100")
MAPPING_LIMIT_PREFIX = "mapping:"


@dataclass(frozen=True)
class LimitSpec:
    """The limit a reservation is checked against.

    Thresholds and licence mapping period caps share the ledger; both are
    reduced to this shape before evaluation.
    """

    limit_id: str
    limit: Decimal
    period_type: PeriodType
    allow_override: bool = False
    max_override_percent: Optional[Decimal] = None

    @classmethod
    def from_threshold(cls, threshold: Threshold) -> "LimitSpec":
        return cls(
            limit_id=threshold.threshold_id,
            limit=threshold.limit_value,
            period_type=threshold.period_type,
            allow_override=threshold.allow_override,
            max_override_percent=threshold.max_override_percent,
        )

    @classmethod
    def from_mapping(cls, mapping: LicenceSubstanceMapping) -> Optional["LimitSpec"]:
        """Build the period-cap spec for ``mapping``, or ``None`` when it has no cap."""

        if mapping.max_quantity_per_period is None:
            return None
        return cls(
            limit_id=f"{MAPPING_LIMIT_PREFIX}{mapping.mapping_id}",
            limit=mapping.max_quantity_per_period,
            period_type=mapping.period_type or PeriodType.YEARLY,
        )

    @property
    def override_ceiling(self) -> Optional[Decimal]:
        """Highest total an override may reach, ``None`` meaning unbounded."""

        if self.max_override_percent is None:
            return None
        return self.limit * self.max_override_percent / HUNDRED


@dataclass(frozen=True)
class BucketKey:
    """Identity of one period counter."""

    limit_id: str
    customer_id: str
    period_type: PeriodType
    bucket: str

    def sort_key(self) -> Tuple[str, str, str, str]:
        return (self.limit_id, self.customer_id, self.period_type.value, self.bucket)

    def label(self) -> str:
        return f"{self.limit_id}/{self.customer_id}/{self.period_type.value}/{self.bucket}"


def period_bucket(period_type: PeriodType, as_of: date | datetime) -> Optional[str]:
    """Derive the bucket label for ``as_of`` under ``period_type``.

    Args:
        period_type (PeriodType): Aggregation window of the limit.
        as_of (date | datetime): Transaction moment. Aware datetimes are
            converted to UTC before the calendar date is taken.

    Returns:
        str | None: ``YYYY-MM-DD``, ``YYYY-Www``, ``YYYY-MM`` or ``YYYY``;
            ``None`` for per-transaction limits, which are never persisted.
    """

    day = utc_date(as_of)
    if period_type is PeriodType.PER_TRANSACTION:
        return None
    if period_type is PeriodType.DAILY:
        return day.isoformat()
    if period_type is PeriodType.WEEKLY:
        iso_year, iso_week, _ = day.isocalendar()
        return f"{iso_year:04d}-W{iso_week:02d}"
    if period_type is PeriodType.MONTHLY:
        return f"{day.year:04d}-{day.month:02d}"
    return f"{day.year:04d}"


def bucket_key(limit_id: str, customer_id: str, period_type: PeriodType, as_of: date | datetime) -> Optional[BucketKey]:
    bucket = period_bucket(period_type, as_of)
    if bucket is None:
        return None
    return BucketKey(limit_id=limit_id, customer_id=customer_id, period_type=period_type, bucket=bucket)


@dataclass(frozen=True)
class Reservation:
    """A hypothetical consumption computed by :meth:`ThresholdLedger.evaluate`."""

    spec: LimitSpec
    customer_id: str
    key: Optional[BucketKey]
    quantity: Decimal
    committed_total: Decimal
    new_total: Decimal

    @property
    def limit(self) -> Decimal:
        return self.spec.limit

    @property
    def over_limit(self) -> bool:
        return self.new_total > self.spec.limit

    @property
    def within_override_ceiling(self) -> bool:
        ceiling = self.spec.override_ceiling
        return ceiling is None or self.new_total <= ceiling

    @property
    def overridable(self) -> bool:
        return self.spec.allow_override and self.within_override_ceiling

    @property
    def accepted(self) -> bool:
        """``True`` when the reservation fits, or provisionally fits via override."""

        return not self.over_limit or self.overridable

    @property
    def usage_percent(self) -> Decimal:
        if self.spec.limit == ZERO:
            return HUNDRED
        return self.new_total / self.spec.limit * HUNDRED

    def in_warning_band(self, warning_percent: Decimal) -> bool:
        warning_level = self.spec.limit * warning_percent / HUNDRED
        return warning_level <= self.new_total <= self.spec.limit


class ThresholdLedger:
    """Thread-safe store of committed per-bucket totals."""

    def __init__(self, totals: Optional[Mapping[BucketKey, Decimal]] = None) -> None:
        self._totals: Dict[BucketKey, Decimal] = dict(totals or {})
        self._locks: KeyedLocks[BucketKey] = KeyedLocks()
        self._totals_lock = threading.Lock()

    def committed_total(self, key: Optional[BucketKey]) -> Decimal:
        if key is None:
            return ZERO
        return self._totals.get(key, ZERO)

    def evaluate(
        self,
        spec: LimitSpec,
        customer_id: str,
        as_of: date | datetime,
        quantity: Decimal,
        *,
        already_reserved: Decimal = ZERO,
    ) -> Reservation:
        """Compute the total a reservation would produce, without storing it.

        Args:
            spec (LimitSpec): Limit being checked.
            customer_id (str): Customer whose consumption is counted.
            as_of (date | datetime): Transaction moment selecting the bucket.
            quantity (Decimal): Quantity to reserve.
            already_reserved (Decimal): Quantity evaluated earlier for the same
                bucket within the same transaction but not yet committed.

        Returns:
            Reservation: The hypothetical outcome. ``committed_total`` is the
                total visible at evaluation time.
        """

        key = bucket_key(spec.limit_id, customer_id, spec.period_type, as_of)
        committed = self.committed_total(key)
        new_total = committed + already_reserved + quantity
        log.debug(
            "Evaluated %s for customer '%s': committed=%s, candidate=%s, limit=%s",
            key.label() if key else f"{spec.limit_id}/per-transaction",
            customer_id,
            committed,
            new_total,
            spec.limit,
        )
        return Reservation(
            spec=spec,
            customer_id=customer_id,
            key=key,
            quantity=quantity,
            committed_total=committed,
            new_total=new_total,
        )

    def try_reserve(
        self,
        spec: LimitSpec,
        customer_id: str,
        as_of: date | datetime,
        quantity: Decimal,
    ) -> Tuple[bool, Decimal, Decimal]:
        """Return ``(accepted, new_total, limit)`` for a prospective reservation."""

        reservation = self.evaluate(spec, customer_id, as_of, quantity)
        return reservation.accepted, reservation.new_total, reservation.limit

    def remaining(
        self,
        spec: LimitSpec,
        customer_id: str,
        as_of: date | datetime,
        *,
        already_reserved: Decimal = ZERO,
    ) -> Decimal:
        """Quantity that still fits under ``spec`` in the current bucket."""

        key = bucket_key(spec.limit_id, customer_id, spec.period_type, as_of)
        left = spec.limit - self.committed_total(key) - already_reserved
        return left if left > ZERO else ZERO

    def commit(self, reservations: Iterable[Reservation], *, allow_override: bool = False) -> None:
        """Apply evaluated reservations atomically.

        Reservations sharing a bucket are summed. Every touched bucket is
        locked (in key order), every bucket is re-checked against the total
        committed *now*, and only if all of them fit are the totals updated.

        Args:
            reservations (Iterable[Reservation]): Output of :meth:`evaluate`.
                Per-transaction reservations carry no key and are ignored.
            allow_override (bool): When ``True`` a bucket may exceed its limit
                if its spec allows overrides, up to the override ceiling.

        Raises:
            ReservationConflict: If any bucket no longer fits. No bucket is
                modified in that case.
        """

        grouped: Dict[BucketKey, Tuple[LimitSpec, Decimal]] = {}
        for reservation in reservations:
            if reservation.key is None:
                continue
            spec, quantity = grouped.get(reservation.key, (reservation.spec, ZERO))
            grouped[reservation.key] = (spec, quantity + reservation.quantity)

        if not grouped:
            return

        ordered: List[BucketKey] = sorted(grouped, key=BucketKey.sort_key)
        with ExitStack() as stack:
            for key in ordered:
                stack.enter_context(self._locks.hold(key))

            updates: Dict[BucketKey, Decimal] = {}
            for key in ordered:
                spec, quantity = grouped[key]
                candidate = self._totals.get(key, ZERO) + quantity
                if candidate > spec.limit and not self._override_fits(spec, candidate, allow_override):
                    log.warning(
                        "Ledger commit rejected for %s: candidate %s exceeds limit %s",
                        key.label(),
                        candidate,
                        spec.limit,
                    )
                    raise ReservationConflict(
                        f"Bucket {key.label()} would reach {candidate}, above its limit of {spec.limit}"
                    )
                updates[key] = candidate

            with self._totals_lock:
                self._totals.update(updates)

        log.info(
            "Committed %d ledger bucket(s): %s",
            len(updates),
            ", ".join(f"{key.label()}={total}" for key, total in updates.items()),
        )

    @staticmethod
    def _override_fits(spec: LimitSpec, candidate: Decimal, allow_override: bool) -> bool:
        if not (allow_override and spec.allow_override):
            return False
        ceiling = spec.override_ceiling
        return ceiling is None or candidate <= ceiling

    def snapshot(self) -> Dict[BucketKey, Decimal]:
        """Return a copy of every committed bucket total."""

        with self._totals_lock:
            return dict(self._totals)


__all__ = [
    "LimitSpec",
    "BucketKey",
    "Reservation",
    "ThresholdLedger",
    "period_bucket",
    "bucket_key",
    "MAPPING_LIMIT_PREFIX",
]
