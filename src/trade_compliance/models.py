"""Domain records shared by the matcher, ledger, classifier and engine.

Master data (licences, mappings, thresholds, holders) is immutable once loaded
and modelled with frozen dataclasses. A :class:`Transaction` is the one
mutable aggregate: the validation engine writes its status, violations and
licence usages, and the override workflow writes its override fields.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .constants import (
    BLOCKING_SEVERITIES,
    GDP_CATEGORIES,
    GDP_QUALIFIED_STATUSES,
    PROCEED_STATUSES,
    ApprovalStatus,
    AuditEventType,
    BusinessCategory,
    GdpQualificationStatus,
    HolderType,
    LicenceStatus,
    OverrideStatus,
    PeriodType,
    PermittedActivity,
    ThresholdType,
    TransactionDirection,
    TransactionType,
    ValidationStatus,
    ViolationSeverity,
)
from .errors import DataIntegrityError

if TYPE_CHECKING:
    from .ledger import Reservation


def utc_date(moment: date | datetime) -> date:
    """Reduce a date or datetime to its UTC calendar date.

    Naive datetimes are taken to be UTC already. Plain dates pass through.
    """

    if isinstance(moment, datetime):
        if moment.tzinfo is not None:
            moment = moment.astimezone(UTC)
        return moment.date()
    return moment


@dataclass(frozen=True)
class Holder:
    """Resolved identity of the customer a transaction is validated for."""

    customer_id: str
    account: str
    data_area_id: str
    category: BusinessCategory
    business_name: str = ""
    is_suspended: bool = False
    holder_type: HolderType = HolderType.CUSTOMER
    approval_status: ApprovalStatus = ApprovalStatus.APPROVED
    gdp_status: GdpQualificationStatus = GdpQualificationStatus.APPROVED

    @property
    def is_approved(self) -> bool:
        return self.approval_status is ApprovalStatus.APPROVED

    @property
    def requires_gdp_qualification(self) -> bool:
        return self.category in GDP_CATEGORIES

    @property
    def is_gdp_qualified(self) -> bool:
        return self.gdp_status in GDP_QUALIFIED_STATUSES


@dataclass(frozen=True)
class Actor:
    """A human user acting on the override workflow."""

    actor_id: str
    roles: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class Licence:
    """A regulator-issued authorisation held by a customer or the company."""

    licence_id: str
    licence_number: str
    holder_type: HolderType
    holder_id: str
    issuing_authority: str
    issue_date: date
    expiry_date: Optional[date]
    status: LicenceStatus
    permitted_activities: PermittedActivity = PermittedActivity.NONE
    licence_type_id: Optional[str] = None
    scope: str = ""

    def is_usable(self, as_of: date) -> bool:
        """Return ``True`` when the licence may provide coverage on ``as_of``."""

        if self.status is not LicenceStatus.VALID:
            return False
        if self.issue_date > as_of:
            return False
        return self.expiry_date is None or self.expiry_date >= as_of

    def permits(self, required: PermittedActivity) -> bool:
        return (self.permitted_activities & required) == required

    def is_held_by(self, holder: Holder) -> bool:
        return self.holder_type is holder.holder_type and self.holder_id == holder.customer_id


@dataclass(frozen=True)
class LicenceSubstanceMapping:
    """Links a licence to one substance with an effectivity window and caps."""

    mapping_id: str
    licence_id: str
    substance_code: str
    effective_date: date
    expiry_date: Optional[date] = None
    max_quantity_per_transaction: Optional[Decimal] = None
    max_quantity_per_period: Optional[Decimal] = None
    period_type: Optional[PeriodType] = None
    licence: Optional[Licence] = field(default=None, compare=False)

    def is_effective(self, as_of: date) -> bool:
        if self.effective_date > as_of:
            return False
        return self.expiry_date is None or self.expiry_date >= as_of


def validate_mappings(mappings: Iterable[LicenceSubstanceMapping]) -> None:
    """Enforce the structural invariants of licence/substance mappings.

    Args:
        mappings (Iterable[LicenceSubstanceMapping]): Mappings to check, with
            their parent licence populated where known.

    Raises:
        DataIntegrityError: If two mappings share ``(licence, substance,
            effective date)`` or a mapping outlives its parent licence.
    """

    seen: Dict[Tuple[str, str, date], str] = {}
    for mapping in mappings:
        key = (mapping.licence_id, mapping.substance_code.upper(), mapping.effective_date)
        if key in seen:
            raise DataIntegrityError(
                f"Mappings '{seen[key]}' and '{mapping.mapping_id}' both cover substance "
                f"'{mapping.substance_code}' on licence '{mapping.licence_id}' from {mapping.effective_date}"
            )
        seen[key] = mapping.mapping_id

        licence = mapping.licence
        if mapping.expiry_date is None or licence is None or licence.expiry_date is None:
            continue
        if mapping.expiry_date > licence.expiry_date:
            raise DataIntegrityError(
                f"Mapping '{mapping.mapping_id}' expires {mapping.expiry_date}, after its licence "
                f"'{licence.licence_number}' ({licence.expiry_date})"
            )


@dataclass(frozen=True)
class Threshold:
    """A regulator-defined limit and the scope it applies to.

    Quantity thresholds cap the summed quantity of a substance; frequency
    thresholds cap how many transactions a customer may place per period and
    ignore the substance discriminators.
    """

    threshold_id: str
    name: str
    limit_value: Decimal
    period_type: PeriodType
    limit_unit: str = "g"
    substance_code: Optional[str] = None
    licence_type_id: Optional[str] = None
    customer_category: Optional[BusinessCategory] = None
    customer_id: Optional[str] = None
    regulatory_list: Optional[str] = None
    warning_percent: Optional[Decimal] = None
    allow_override: bool = True
    max_override_percent: Optional[Decimal] = None
    is_active: bool = True
    effective_from: Optional[date] = None
    effective_to: Optional[date] = None
    threshold_type: ThresholdType = ThresholdType.QUANTITY

    @property
    def scope_rank(self) -> int:
        """Specificity of the threshold: customer 3, category 2, substance 1, global 0."""

        if self.customer_id is not None:
            return 3
        if self.customer_category is not None:
            return 2
        if self.substance_code is not None:
            return 1
        return 0

    def is_effective(self, as_of: date) -> bool:
        if not self.is_active:
            return False
        if self.effective_from is not None and as_of < self.effective_from:
            return False
        return self.effective_to is None or as_of <= self.effective_to

    def applies_to(
        self,
        substance_code: str,
        holder: Holder,
        licence_type_id: Optional[str] = None,
        regulatory_list: Optional[str] = None,
    ) -> bool:
        """Return ``True`` when every scope discriminator matches.

        Only quantity thresholds match; frequency thresholds are selected
        with :meth:`applies_to_holder`.
        The regulatory list is only compared when ``regulatory_list`` is
        given; callers without the substance schedule filter it themselves.
        """

        if self.threshold_type is not ThresholdType.QUANTITY:
            return False
        if self.substance_code is not None and self.substance_code.upper() != substance_code.upper():
            return False
        if self.customer_id is not None and self.customer_id != holder.customer_id:
            return False
        if self.customer_category is not None and self.customer_category is not holder.category:
            return False
        if self.licence_type_id is not None and self.licence_type_id != licence_type_id:
            return False
        if regulatory_list is not None and self.regulatory_list not in (None, regulatory_list):
            return False
        return True

    def applies_to_holder(self, holder: Holder) -> bool:
        if self.customer_id is not None and self.customer_id != holder.customer_id:
            return False
        return self.customer_category is None or self.customer_category is holder.category


@dataclass(frozen=True)
class TransactionLine:
    """One line of a transaction, in the normalized base unit.

    ``substance_code`` is never supplied by the caller; the engine fills it in
    from the product master before validating.
    """

    line_number: int
    item_number: str
    data_area_id: str
    quantity: Decimal
    substance_code: Optional[str] = None


@dataclass(frozen=True)
class TransactionViolation:
    """A classified business finding attached to a transaction."""

    error_code: str
    message: str
    severity: ViolationSeverity
    can_override: bool
    line_number: Optional[int] = None
    substance_code: Optional[str] = None
    threshold_id: Optional[str] = None
    limit: Optional[Decimal] = None
    actual: Optional[Decimal] = None

    @property
    def is_blocking(self) -> bool:
        return self.severity in BLOCKING_SEVERITIES


@dataclass(frozen=True)
class LicenceUsage:
    """Attribution of covered quantity to one licence across transaction lines."""

    licence_id: str
    licence_number: str
    covered_quantity: Decimal
    line_quantities: Tuple[Tuple[int, Decimal], ...]
    substance_codes: Tuple[str, ...]

    @property
    def line_numbers(self) -> Tuple[int, ...]:
        return tuple(line_number for line_number, _ in self.line_quantities)


@dataclass
class Transaction:
    """A proposed trade transaction and its compliance outcome."""

    transaction_id: str
    external_reference: str
    customer_account: str
    data_area_id: str
    transaction_type: TransactionType
    direction: TransactionDirection
    transaction_date: datetime
    lines: List[TransactionLine]
    origin_country: Optional[str] = None
    destination_country: Optional[str] = None
    total_value: Decimal = Decimal("0")
    validation_status: ValidationStatus = ValidationStatus.PENDING
    override_status: OverrideStatus = OverrideStatus.NONE
    violations: List[TransactionViolation] = field(default_factory=list)
    licence_usages: List[LicenceUsage] = field(default_factory=list)
    validated_at: Optional[datetime] = None
    override_actor_id: Optional[str] = None
    override_decided_at: Optional[datetime] = None
    override_justification: Optional[str] = None
    rejection_reason: Optional[str] = None
    pending_reservations: List["Reservation"] = field(default_factory=list, repr=False)

    @property
    def total_quantity(self) -> Decimal:
        return sum((line.quantity for line in self.lines), Decimal("0"))

    @property
    def can_proceed(self) -> bool:
        return self.validation_status in PROCEED_STATUSES

    @property
    def can_override(self) -> bool:
        return self.validation_status is ValidationStatus.REQUIRES_OVERRIDE


@dataclass(frozen=True)
class TransactionValidationResult:
    """Outcome handed back to callers of ``validate``."""

    transaction_id: str
    status: ValidationStatus
    is_valid: bool
    can_proceed: bool
    can_override: bool
    violations: Tuple[TransactionViolation, ...]
    licence_usages: Tuple[LicenceUsage, ...]
    validation_time_ms: float


@dataclass(frozen=True)
class OverrideResult:
    """Outcome of a successful override decision."""

    transaction_id: str
    status: ValidationStatus
    override_status: OverrideStatus
    actor_id: str
    decided_at: datetime


@dataclass(frozen=True)
class AuditEvent:
    """Domain event handed to the audit sink."""

    event_type: AuditEventType
    entity_id: str
    actor_id: Optional[str]
    occurred_at: datetime
    details: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)


__all__ = [
    "utc_date",
    "Holder",
    "Actor",
    "Licence",
    "LicenceSubstanceMapping",
    "validate_mappings",
    "Threshold",
    "TransactionLine",
    "TransactionViolation",
    "LicenceUsage",
    "Transaction",
    "TransactionValidationResult",
    "OverrideResult",
    "AuditEvent",
]
