"""Licence coverage matching for a single substance and quantity.

The matcher answers "which valid licences of this holder authorise this
substance on this date, and how much can each still absorb?". It never decides
whether a shortfall is a violation; it only reports what it could allocate.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Tuple

from . import log
from .constants import PermittedActivity
from .ledger import LimitSpec, Reservation, ThresholdLedger
from .models import Holder, Licence, LicenceSubstanceMapping, utc_date
from .repositories import LicenceRepository


ZERO = Decimal("0")


@dataclass(frozen=True)
class CoverageCandidate:
    """A usable mapping and the quantity it can still cover.

    ``available`` is ``None`` when neither a per-transaction nor a per-period
    cap bounds the mapping.
    """

    mapping: LicenceSubstanceMapping
    licence: Licence
    available: Optional[Decimal]
    period_spec: Optional[LimitSpec] = None


@dataclass(frozen=True)
class CoverageAllocation:
    """Quantity a single licence absorbed for one line."""

    mapping: LicenceSubstanceMapping
    licence: Licence
    quantity: Decimal
    reservation: Optional[Reservation] = None


@dataclass(frozen=True)
class CoverageResult:
    substance_code: str
    required: Decimal
    allocations: Tuple[CoverageAllocation, ...]
    has_candidates: bool

    @property
    def covered(self) -> Decimal:
        return sum((allocation.quantity for allocation in self.allocations), ZERO)

    @property
    def shortfall(self) -> Decimal:
        missing = self.required - self.covered
        return missing if missing > ZERO else ZERO

    @property
    def is_complete(self) -> bool:
        return self.shortfall == ZERO


def _expiry_order(candidate: CoverageCandidate) -> Tuple[bool, date, str, date]:
    expiry = candidate.licence.expiry_date
    return (
        expiry is None,
        expiry or date.max,
        candidate.licence.licence_number,
        candidate.mapping.effective_date,
    )


class LicenceCoverageMatcher:
    """Find and allocate licence coverage for a holder's substance quantities."""

    def __init__(self, licences: LicenceRepository, ledger: ThresholdLedger) -> None:
        self.licences = licences
        self.ledger = ledger

    def find_candidates(
        self,
        holder: Holder,
        substance_code: str,
        as_of: date | datetime,
        *,
        required_activities: PermittedActivity = PermittedActivity.NONE,
        consumed: Optional[Mapping[str, Decimal]] = None,
    ) -> List[CoverageCandidate]:
        """Return usable coverage candidates, soonest-expiring licence first.

        A mapping qualifies when it is effective on ``as_of``, its licence is
        usable on that date, held by ``holder`` and grants every activity in
        ``required_activities``. Lapsed or suspended licences are dropped
        silently.

        Args:
            holder (Holder): Customer the transaction is validated for.
            substance_code (str): Controlled substance being traded.
            as_of (date | datetime): Transaction moment; reduced to its UTC date.
            required_activities (PermittedActivity): Activities the licence must
                permit for this transaction type and direction.
            consumed (Mapping[str, Decimal] | None): Quantity already allocated
                per mapping id earlier in the same transaction.

        Returns:
            list[CoverageCandidate]: Ordered candidates with their remaining
                capacity.
        """

        day = utc_date(as_of)
        consumed = consumed or {}
        candidates: List[CoverageCandidate] = []
        for mapping in self.licences.find_active_mappings(substance_code, holder, day):
            licence = mapping.licence
            if licence is None or not mapping.is_effective(day):
                continue
            if not licence.is_usable(day) or not licence.is_held_by(holder):
                log.debug("Skipping licence '%s': not usable on %s", licence.licence_number, day)
                continue
            if not licence.permits(required_activities):
                log.debug(
                    "Skipping licence '%s': activities %s do not include %s",
                    licence.licence_number,
                    licence.permitted_activities,
                    required_activities,
                )
                continue

            already = consumed.get(mapping.mapping_id, ZERO)
            available: Optional[Decimal] = None
            if mapping.max_quantity_per_transaction is not None:
                available = max(mapping.max_quantity_per_transaction - already, ZERO)

            period_spec = LimitSpec.from_mapping(mapping)
            if period_spec is not None:
                period_left = self.ledger.remaining(
                    period_spec, holder.customer_id, as_of, already_reserved=already
                )
                available = period_left if available is None else min(available, period_left)

            candidates.append(
                CoverageCandidate(
                    mapping=mapping,
                    licence=licence,
                    available=available,
                    period_spec=period_spec,
                )
            )

        candidates.sort(key=_expiry_order)
        log.debug(
            "Coverage candidates for %s/%s: %s",
            holder.customer_id,
            substance_code,
            [(candidate.licence.licence_number, candidate.available) for candidate in candidates],
        )
        return candidates

    def find_coverage(
        self,
        holder: Holder,
        substance_code: str,
        as_of: date | datetime,
        required_quantity: Decimal,
        *,
        required_activities: PermittedActivity = PermittedActivity.NONE,
        consumed: Optional[Dict[str, Decimal]] = None,
    ) -> CoverageResult:
        """Greedily allocate ``required_quantity`` across the candidates.

        ``consumed`` is updated in place with the quantity each mapping
        absorbed, so successive lines of one transaction see the reduced
        capacity. Mapping period caps yield uncommitted ledger reservations on
        the returned allocations.
        """

        if consumed is None:
            consumed = {}
        candidates = self.find_candidates(
            holder,
            substance_code,
            as_of,
            required_activities=required_activities,
            consumed=consumed,
        )

        outstanding = required_quantity
        allocations: List[CoverageAllocation] = []
        for candidate in candidates:
            if outstanding <= ZERO:
                break
            take = outstanding if candidate.available is None else min(candidate.available, outstanding)
            if take <= ZERO:
                continue

            mapping_id = candidate.mapping.mapping_id
            already = consumed.get(mapping_id, ZERO)
            reservation = None
            if candidate.period_spec is not None:
                reservation = self.ledger.evaluate(
                    candidate.period_spec,
                    holder.customer_id,
                    as_of,
                    take,
                    already_reserved=already,
                )
            consumed[mapping_id] = already + take
            allocations.append(
                CoverageAllocation(
                    mapping=candidate.mapping,
                    licence=candidate.licence,
                    quantity=take,
                    reservation=reservation,
                )
            )
            outstanding -= take

        # A candidate whose caps are already used up cannot cover anything.
        result = CoverageResult(
            substance_code=substance_code,
            required=required_quantity,
            allocations=tuple(allocations),
            has_candidates=any(
                candidate.available is None or candidate.available > ZERO for candidate in candidates
            ),
        )
        if not result.is_complete:
            log.info(
                "Coverage shortfall of %s for substance '%s' (customer '%s', %d candidate(s))",
                result.shortfall,
                substance_code,
                holder.customer_id,
                len(candidates),
            )
        return result


__all__ = [
    "CoverageCandidate",
    "CoverageAllocation",
    "CoverageResult",
    "LicenceCoverageMatcher",
]
