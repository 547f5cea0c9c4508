"""Enumerations shared across the transaction compliance modules.

Centralises domain constants so that the rule engine, the workbook data layer
and the CLI rely on a single source of truth for every closed vocabulary.
Values arriving from outside the process (JSON requests, workbook cells) are
decoded through :func:`parse_enum`, which fails with a typed error instead of
guessing.
"""

from __future__ import annotations

from enum import Enum, Flag
from typing import Optional, Type, TypeVar


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

COMPLIANCE_MANAGER_ROLE = "ComplianceManager"


class TransactionType(str, Enum):
    """Enumerate the kinds of trade transaction submitted for validation."""

    ORDER = "Order"
    SHIPMENT = "Shipment"
    RETURN = "Return"
    TRANSFER = "Transfer"


class TransactionDirection(str, Enum):
    """Enumerate the movement direction relative to the holder's country."""

    INTERNAL = "Internal"
    INBOUND = "Inbound"
    OUTBOUND = "Outbound"


class ValidationStatus(str, Enum):
    """Enumerate the validation lifecycle states of a transaction."""

    PENDING = "Pending"
    PASSED = "Passed"
    FAILED = "Failed"
    REQUIRES_OVERRIDE = "RequiresOverride"
    APPROVED_WITH_OVERRIDE = "ApprovedWithOverride"
    REJECTED = "Rejected"


# States from which a transaction may proceed to fulfilment.
PROCEED_STATUSES = frozenset({ValidationStatus.PASSED, ValidationStatus.APPROVED_WITH_OVERRIDE})


class OverrideStatus(str, Enum):
    """Enumerate the override decision attached to a transaction."""

    NONE = "None"
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class LicenceStatus(str, Enum):
    """Enumerate the administrative status of a licence."""

    VALID = "Valid"
    EXPIRED = "Expired"
    SUSPENDED = "Suspended"
    REVOKED = "Revoked"


class HolderType(str, Enum):
    """Enumerate who may hold a licence."""

    CUSTOMER = "Customer"
    COMPANY = "Company"


class BusinessCategory(str, Enum):
    """Enumerate customer business categories used to scope thresholds."""

    HOSPITAL_PHARMACY = "HospitalPharmacy"
    COMMUNITY_PHARMACY = "CommunityPharmacy"
    VETERINARIAN = "Veterinarian"
    MANUFACTURER = "Manufacturer"
    WHOLESALER_EU = "WholesalerEU"
    WHOLESALER_NON_EU = "WholesalerNonEU"
    RESEARCH_INSTITUTION = "ResearchInstitution"


# Categories whose customers must hold a current GDP qualification.
GDP_CATEGORIES = frozenset(
    {
        BusinessCategory.HOSPITAL_PHARMACY,
        BusinessCategory.COMMUNITY_PHARMACY,
        BusinessCategory.WHOLESALER_EU,
        BusinessCategory.WHOLESALER_NON_EU,
    }
)


class ApprovalStatus(str, Enum):
    """Enumerate the onboarding approval state of a customer."""

    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class GdpQualificationStatus(str, Enum):
    """Enumerate the Good Distribution Practice qualification of a customer."""

    NOT_QUALIFIED = "NotQualified"
    UNDER_REVIEW = "UnderReview"
    APPROVED = "Approved"
    CONDITIONALLY_APPROVED = "ConditionallyApproved"
    REJECTED = "Rejected"


GDP_QUALIFIED_STATUSES = frozenset(
    {GdpQualificationStatus.APPROVED, GdpQualificationStatus.CONDITIONALLY_APPROVED}
)


class ThresholdType(str, Enum):
    """Enumerate what a threshold counts: traded quantity or number of transactions."""

    QUANTITY = "Quantity"
    FREQUENCY = "Frequency"


class PeriodType(str, Enum):
    """Enumerate the aggregation windows a quantity limit can apply to."""

    PER_TRANSACTION = "PerTransaction"
    DAILY = "Daily"
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"
    YEARLY = "Yearly"


class ViolationSeverity(str, Enum):
    """Enumerate violation severities, most severe first."""

    CRITICAL = "Critical"
    ERROR = "Error"
    WARNING = "Warning"
    INFO = "Info"


SEVERITY_RANK = {
    ViolationSeverity.CRITICAL: 0,
    ViolationSeverity.ERROR: 1,
    ViolationSeverity.WARNING: 2,
    ViolationSeverity.INFO: 3,
}

BLOCKING_SEVERITIES = frozenset({ViolationSeverity.CRITICAL, ViolationSeverity.ERROR})


class PermittedActivity(Flag):
    """Activities a licence authorises its holder to perform."""

    NONE = 0
    POSSESS = 1
    STORE = 2
    DISTRIBUTE = 4
    IMPORT = 8
    EXPORT = 16
    MANUFACTURE = 32


class ErrorCode(str, Enum):
    """Machine-readable codes attached to violations and raised errors."""

    NO_LICENCE_COVERAGE = "NO_LICENCE_COVERAGE"
    INSUFFICIENT_LICENCE_COVERAGE = "INSUFFICIENT_LICENCE_COVERAGE"
    THRESHOLD_EXCEEDED = "THRESHOLD_EXCEEDED"
    THRESHOLD_WARNING = "THRESHOLD_WARNING"
    FREQUENCY_THRESHOLD_EXCEEDED = "FREQUENCY_THRESHOLD_EXCEEDED"
    SUBSTANCE_NOT_FOUND = "SUBSTANCE_NOT_FOUND"
    MISSING_ORIGIN_COUNTRY = "MISSING_ORIGIN_COUNTRY"
    MISSING_DESTINATION_COUNTRY = "MISSING_DESTINATION_COUNTRY"
    COUNTRY_MISMATCH = "COUNTRY_MISMATCH"
    CORRIDOR_NOT_PERMITTED = "CORRIDOR_NOT_PERMITTED"
    CUSTOMER_NOT_FOUND = "CUSTOMER_NOT_FOUND"
    CUSTOMER_SUSPENDED = "CUSTOMER_SUSPENDED"
    CUSTOMER_NOT_APPROVED = "CUSTOMER_NOT_APPROVED"
    GDP_QUALIFICATION_INVALID = "GDP_QUALIFICATION_INVALID"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    INVALID_ENUM_VALUE = "INVALID_ENUM_VALUE"
    INVALID_REQUEST = "INVALID_REQUEST"
    VALIDATION_CANCELLED = "VALIDATION_CANCELLED"
    RESERVATION_CONFLICT = "RESERVATION_CONFLICT"
    INVARIANT_VIOLATION = "INVARIANT_VIOLATION"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    ALREADY_RESOLVED = "ALREADY_RESOLVED"
    OVERRIDE_NOT_ALLOWED = "OVERRIDE_NOT_ALLOWED"
    UNAUTHORIZED = "UNAUTHORIZED"
    JUSTIFICATION_REQUIRED = "JUSTIFICATION_REQUIRED"
    OVERRIDE_EXPIRED = "OVERRIDE_EXPIRED"
    DATA_INTEGRITY = "DATA_INTEGRITY"


class AuditEventType(str, Enum):
    """Enumerate the domain events emitted to the audit sink."""

    TRANSACTION_VALIDATED = "TransactionValidated"
    OVERRIDE_APPROVED = "OverrideApproved"
    OVERRIDE_REJECTED = "OverrideRejected"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    CUSTOMERS = "Customers"
    PRODUCTS = "Products"
    SUBSTANCES = "Substances"
    LICENCES = "Licences"
    LICENCE_SUBSTANCES = "LicenceSubstances"
    THRESHOLDS = "Thresholds"
    CORRIDORS = "Corridors"
    LEDGER_COUNTERS = "LedgerCounters"
    TRANSACTIONS = "Transactions"
    AUDIT_LOG = "AuditLog"


E = TypeVar("E", bound=Enum)


def parse_enum(enum_cls: Type[E], raw: object, *, field: str, default: Optional[E] = None) -> E:
    """Decode an external value into a member of a closed enumeration.

    Matching is case-insensitive against both member values and member names,
    so ``"outbound"``, ``"Outbound"`` and ``"OUTBOUND"`` all decode to
    :attr:`TransactionDirection.OUTBOUND`. Members of the enumeration are
    returned unchanged.

    Args:
        enum_cls (type[Enum]): Target enumeration.
        raw (object): Value received at the boundary.
        field (str): Name of the field being decoded, used in error messages.
        default (Enum | None): Member returned when ``raw`` is ``None`` or
            blank. When omitted a blank value is an error.

    Returns:
        Enum: The decoded member.

    Raises:
        InvalidEnumValue: If ``raw`` does not name a member of ``enum_cls``.
    """

    from .errors import InvalidEnumValue

    if isinstance(raw, enum_cls):
        return raw
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        if default is not None:
            return default
        raise InvalidEnumValue(field, raw, [str(member.value) for member in enum_cls])

    candidate = str(raw).strip().casefold()
    for member in enum_cls:
        if str(member.value).casefold() == candidate or member.name.casefold() == candidate:
            return member
    raise InvalidEnumValue(field, raw, [str(member.value) for member in enum_cls])


def parse_activities(raw: object) -> PermittedActivity:
    """Decode a comma separated activity list such as ``"Possess,Distribute"``."""

    from .errors import InvalidEnumValue

    if isinstance(raw, PermittedActivity):
        return raw
    if raw is None or not str(raw).strip():
        return PermittedActivity.NONE

    activities = PermittedActivity.NONE
    allowed = [member.name.title() for member in PermittedActivity if member.name != "NONE"]
    for token in str(raw).split(","):
        name = token.strip().upper()
        if not name:
            continue
        try:
            activities |= PermittedActivity[name]
        except KeyError as exc:
            raise InvalidEnumValue("permitted_activities", token.strip(), allowed) from exc
    return activities


def format_activities(activities: PermittedActivity) -> str:
    """Render activity flags in the comma separated form read by :func:`parse_activities`."""

    return ",".join(
        member.name.title()
        for member in PermittedActivity
        if member.name != "NONE" and member in activities
    )


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "COMPLIANCE_MANAGER_ROLE",
    "TransactionType",
    "TransactionDirection",
    "ValidationStatus",
    "PROCEED_STATUSES",
    "OverrideStatus",
    "LicenceStatus",
    "HolderType",
    "BusinessCategory",
    "GDP_CATEGORIES",
    "ApprovalStatus",
    "GdpQualificationStatus",
    "GDP_QUALIFIED_STATUSES",
    "ThresholdType",
    "PeriodType",
    "ViolationSeverity",
    "SEVERITY_RANK",
    "BLOCKING_SEVERITIES",
    "PermittedActivity",
    "ErrorCode",
    "AuditEventType",
    "SheetName",
    "parse_enum",
    "parse_activities",
    "format_activities",
]
