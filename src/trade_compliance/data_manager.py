"""Data access layer for the compliance engine.

This module reads from and writes to the master workbook that backs the
command line runtime. Business rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Sheet operations: loading master data as domain records, and writing back
   ledger counters, validated transactions and audit events.
"""

from __future__ import annotations

import configparser
import json
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Sequence, Tuple

import openpyxl
from openpyxl.workbook import Workbook

from . import log
from .constants import (
    COMPLIANCE_MANAGER_ROLE,
    ApprovalStatus,
    AuditEventType,
    BusinessCategory,
    GdpQualificationStatus,
    HolderType,
    LicenceStatus,
    OverrideStatus,
    PeriodType,
    SheetName,
    ThresholdType,
    TransactionDirection,
    TransactionType,
    ValidationStatus,
    ViolationSeverity,
    parse_activities,
    parse_enum,
)
from .errors import DataIntegrityError
from .ledger import BucketKey, LimitSpec, Reservation
from .models import (
    AuditEvent,
    Holder,
    Licence,
    LicenceSubstanceMapping,
    LicenceUsage,
    Threshold,
    Transaction,
    TransactionLine,
    TransactionViolation,
)


CONFIG_FILE_NAME = "config.ini"

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.CUSTOMERS.value: [
        "CustomerID",
        "Account",
        "DataAreaID",
        "BusinessName",
        "Category",
        "IsSuspended",
        "ApprovalStatus",
        "GdpQualificationStatus",
    ],
    SheetName.PRODUCTS.value: [
        "ItemNumber",
        "DataAreaID",
        "ProductName",
        "SubstanceCode",
    ],
    SheetName.SUBSTANCES.value: [
        "SubstanceCode",
        "SubstanceName",
        "RegulatoryList",
    ],
    SheetName.LICENCES.value: [
        "LicenceID",
        "LicenceNumber",
        "HolderType",
        "HolderID",
        "IssuingAuthority",
        "IssueDate",
        "ExpiryDate",
        "Status",
        "PermittedActivities",
        "LicenceTypeID",
        "Scope",
    ],
    SheetName.LICENCE_SUBSTANCES.value: [
        "MappingID",
        "LicenceID",
        "SubstanceCode",
        "EffectiveDate",
        "ExpiryDate",
        "MaxQuantityPerTransaction",
        "MaxQuantityPerPeriod",
        "PeriodType",
    ],
    SheetName.THRESHOLDS.value: [
        "ThresholdID",
        "Name",
        "ThresholdType",
        "SubstanceCode",
        "LicenceTypeID",
        "CustomerCategory",
        "CustomerID",
        "RegulatoryList",
        "LimitValue",
        "LimitUnit",
        "PeriodType",
        "WarningPercent",
        "AllowOverride",
        "MaxOverridePercent",
        "IsActive",
        "EffectiveFrom",
        "EffectiveTo",
    ],
    SheetName.CORRIDORS.value: [
        "OriginCountry",
        "DestinationCountry",
        "CustomerCategory",
    ],
    SheetName.LEDGER_COUNTERS.value: [
        "LimitID",
        "CustomerID",
        "PeriodType",
        "Bucket",
        "Total",
    ],
    SheetName.TRANSACTIONS.value: [
        "TransactionID",
        "ExternalReference",
        "CustomerAccount",
        "ValidationStatus",
        "OverrideStatus",
        "ValidatedAt",
        "Payload",
    ],
    SheetName.AUDIT_LOG.value: [
        "EventID",
        "OccurredAt",
        "EventType",
        "EntityID",
        "ActorID",
        "Details",
    ],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    schema_version: str
    max_commit_retries: int = 3
    default_warning_percent: Decimal = Decimal("80")
    authorized_roles: Tuple[str, ...] = (COMPLIANCE_MANAGER_ROLE,)
    min_justification_length: int = 20
    max_override_age_hours: int = 168


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    item_number: str
    data_area_id: str
    product_name: str
    substance_code: Optional[str]


@dataclass(frozen=True)
class SubstanceRow:
    substance_code: str
    substance_name: str
    regulatory_list: Optional[str]


@dataclass(frozen=True)
class CorridorRow:
    origin_country: str
    destination_country: str
    customer_category: Optional[BusinessCategory]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory contains ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion.
    """

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` is mandatory. ``[Validation]`` and ``[Override]`` fall back to
    the engine defaults entry by entry. Relative ``DataFile`` entries are
    anchored at ``base_path`` (or the working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory relative data files resolve against.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If a numeric option cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw).expanduser()
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    roles_raw = parser.get("Override", "AuthorizedRoles", fallback=COMPLIANCE_MANAGER_ROLE)
    roles = tuple(role.strip() for role in roles_raw.split(",") if role.strip())

    return ConfigSettings(
        data_file=data_file_path,
        schema_version=schema_version,
        max_commit_retries=parser.getint("Validation", "MaxCommitRetries", fallback=3),
        default_warning_percent=Decimal(parser.get("Validation", "DefaultWarningPercent", fallback="80")),
        authorized_roles=roles or (COMPLIANCE_MANAGER_ROLE,),
        min_justification_length=parser.getint("Override", "MinJustificationLength", fallback=20),
        max_override_age_hours=parser.getint("Override", "MaxOverrideAgeHours", fallback=168),
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


# ---------------------------------------------------------------------------
# Cell coercion
# ---------------------------------------------------------------------------


def _text(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _required_text(record: Mapping[str, object], column: str, sheet: str) -> str:
    text = _text(record.get(column))
    if text is None:
        raise DataIntegrityError(f"Sheet '{sheet}' has a row without {column}")
    return text


def _decimal(value: object) -> Optional[Decimal]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return Decimal(str(value).strip())


def _date(value: object) -> Optional[date]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])


def _bool(value: object, *, default: bool) -> bool:
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "y", "1"}
    return bool(value)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_datetime(value: object) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _header_map(workbook: Workbook, sheet_name: str) -> Dict[str, int]:
    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def iter_records(workbook: Workbook, sheet_name: str) -> Iterator[Dict[str, object]]:
    """Yield each populated row of ``sheet_name`` as a ``{header: value}`` dict.

    The header row and fully empty rows are skipped.
    """

    sheet = workbook[sheet_name]
    headers = [cell.value for cell in sheet[1]]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield {header: value for header, value in zip(headers, raw) if header is not None}


def append_record(workbook: Workbook, sheet_name: str, values: Mapping[str, object]) -> None:
    """Append a row to ``sheet_name`` with ``values`` placed under their headers.

    Raises:
        KeyError: If a key of ``values`` is not a column of the sheet.
    """

    header_map = _header_map(workbook, sheet_name)
    row: list[object] = [None] * len(header_map)
    for column, value in values.items():
        if column not in header_map:
            raise KeyError(f"Unknown {sheet_name} field: {column}")
        row[header_map[column] - 1] = value
    workbook[sheet_name].append(row)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Return the 1-based row index whose ``key_column`` equals ``key_value``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    sheet = workbook[sheet_name]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx
    return None


# ---------------------------------------------------------------------------
# Master data
# ---------------------------------------------------------------------------


def deserialize_customer(record: Mapping[str, object]) -> Holder:
    sheet = SheetName.CUSTOMERS.value
    return Holder(
        customer_id=_required_text(record, "CustomerID", sheet),
        account=_required_text(record, "Account", sheet),
        data_area_id=_required_text(record, "DataAreaID", sheet),
        business_name=_text(record.get("BusinessName")) or "",
        category=parse_enum(BusinessCategory, record.get("Category"), field="Category"),
        is_suspended=_bool(record.get("IsSuspended"), default=False),
        approval_status=parse_enum(
            ApprovalStatus, record.get("ApprovalStatus"), field="ApprovalStatus", default=ApprovalStatus.APPROVED
        ),
        gdp_status=parse_enum(
            GdpQualificationStatus,
            record.get("GdpQualificationStatus"),
            field="GdpQualificationStatus",
            default=GdpQualificationStatus.APPROVED,
        ),
    )


def deserialize_product(record: Mapping[str, object]) -> ProductRow:
    sheet = SheetName.PRODUCTS.value
    substance = _text(record.get("SubstanceCode"))
    return ProductRow(
        item_number=_required_text(record, "ItemNumber", sheet),
        data_area_id=_required_text(record, "DataAreaID", sheet),
        product_name=_text(record.get("ProductName")) or "",
        substance_code=substance.upper() if substance else None,
    )


def deserialize_substance(record: Mapping[str, object]) -> SubstanceRow:
    return SubstanceRow(
        substance_code=_required_text(record, "SubstanceCode", SheetName.SUBSTANCES.value).upper(),
        substance_name=_text(record.get("SubstanceName")) or "",
        regulatory_list=_text(record.get("RegulatoryList")),
    )


def deserialize_licence(record: Mapping[str, object]) -> Licence:
    """Convert a ``Licences`` row into a :class:`Licence`.

    Raises:
        DataIntegrityError: If an identifying column or the issue date is blank.
        InvalidEnumValue: If a status, holder type or activity is unknown.
    """

    sheet = SheetName.LICENCES.value
    issue_date = _date(record.get("IssueDate"))
    if issue_date is None:
        raise DataIntegrityError(f"Licence '{record.get('LicenceNumber')}' has no IssueDate")
    return Licence(
        licence_id=_required_text(record, "LicenceID", sheet),
        licence_number=_required_text(record, "LicenceNumber", sheet),
        holder_type=parse_enum(HolderType, record.get("HolderType"), field="HolderType", default=HolderType.CUSTOMER),
        holder_id=_required_text(record, "HolderID", sheet),
        issuing_authority=_text(record.get("IssuingAuthority")) or "",
        issue_date=issue_date,
        expiry_date=_date(record.get("ExpiryDate")),
        status=parse_enum(LicenceStatus, record.get("Status"), field="Status"),
        permitted_activities=parse_activities(record.get("PermittedActivities")),
        licence_type_id=_text(record.get("LicenceTypeID")),
        scope=_text(record.get("Scope")) or "",
    )


def deserialize_mapping(record: Mapping[str, object]) -> LicenceSubstanceMapping:
    sheet = SheetName.LICENCE_SUBSTANCES.value
    effective = _date(record.get("EffectiveDate"))
    if effective is None:
        raise DataIntegrityError(f"Mapping '{record.get('MappingID')}' has no EffectiveDate")
    period_raw = record.get("PeriodType")
    return LicenceSubstanceMapping(
        mapping_id=_required_text(record, "MappingID", sheet),
        licence_id=_required_text(record, "LicenceID", sheet),
        substance_code=_required_text(record, "SubstanceCode", sheet).upper(),
        effective_date=effective,
        expiry_date=_date(record.get("ExpiryDate")),
        max_quantity_per_transaction=_decimal(record.get("MaxQuantityPerTransaction")),
        max_quantity_per_period=_decimal(record.get("MaxQuantityPerPeriod")),
        period_type=parse_enum(PeriodType, period_raw, field="PeriodType") if _text(period_raw) else None,
    )


def deserialize_threshold(record: Mapping[str, object]) -> Threshold:
    sheet = SheetName.THRESHOLDS.value
    limit = _decimal(record.get("LimitValue"))
    if limit is None:
        raise DataIntegrityError(f"Threshold '{record.get('ThresholdID')}' has no LimitValue")
    category_raw = record.get("CustomerCategory")
    substance = _text(record.get("SubstanceCode"))
    return Threshold(
        threshold_id=_required_text(record, "ThresholdID", sheet),
        name=_text(record.get("Name")) or _required_text(record, "ThresholdID", sheet),
        limit_value=limit,
        period_type=parse_enum(PeriodType, record.get("PeriodType"), field="PeriodType"),
        limit_unit=_text(record.get("LimitUnit")) or "g",
        substance_code=substance.upper() if substance else None,
        licence_type_id=_text(record.get("LicenceTypeID")),
        customer_category=(
            parse_enum(BusinessCategory, category_raw, field="CustomerCategory") if _text(category_raw) else None
        ),
        customer_id=_text(record.get("CustomerID")),
        regulatory_list=_text(record.get("RegulatoryList")),
        warning_percent=_decimal(record.get("WarningPercent")),
        allow_override=_bool(record.get("AllowOverride"), default=True),
        max_override_percent=_decimal(record.get("MaxOverridePercent")),
        is_active=_bool(record.get("IsActive"), default=True),
        effective_from=_date(record.get("EffectiveFrom")),
        effective_to=_date(record.get("EffectiveTo")),
        threshold_type=parse_enum(
            ThresholdType, record.get("ThresholdType"), field="ThresholdType", default=ThresholdType.QUANTITY
        ),
    )


def deserialize_corridor(record: Mapping[str, object]) -> CorridorRow:
    sheet = SheetName.CORRIDORS.value
    category_raw = record.get("CustomerCategory")
    return CorridorRow(
        origin_country=_required_text(record, "OriginCountry", sheet).upper(),
        destination_country=_required_text(record, "DestinationCountry", sheet).upper(),
        customer_category=(
            parse_enum(BusinessCategory, category_raw, field="CustomerCategory") if _text(category_raw) else None
        ),
    )


def iter_customers(workbook: Workbook) -> Iterator[Holder]:
    for record in iter_records(workbook, SheetName.CUSTOMERS.value):
        yield deserialize_customer(record)


def iter_products(workbook: Workbook) -> Iterator[ProductRow]:
    for record in iter_records(workbook, SheetName.PRODUCTS.value):
        yield deserialize_product(record)


def iter_substances(workbook: Workbook) -> Iterator[SubstanceRow]:
    for record in iter_records(workbook, SheetName.SUBSTANCES.value):
        yield deserialize_substance(record)


def iter_licences(workbook: Workbook) -> Iterator[Licence]:
    for record in iter_records(workbook, SheetName.LICENCES.value):
        yield deserialize_licence(record)


def iter_licence_substances(workbook: Workbook) -> Iterator[LicenceSubstanceMapping]:
    for record in iter_records(workbook, SheetName.LICENCE_SUBSTANCES.value):
        yield deserialize_mapping(record)


def iter_thresholds(workbook: Workbook) -> Iterator[Threshold]:
    for record in iter_records(workbook, SheetName.THRESHOLDS.value):
        yield deserialize_threshold(record)


def iter_corridors(workbook: Workbook) -> Iterator[CorridorRow]:
    for record in iter_records(workbook, SheetName.CORRIDORS.value):
        yield deserialize_corridor(record)


# ---------------------------------------------------------------------------
# Ledger counters
# ---------------------------------------------------------------------------


def load_ledger_counters(workbook: Workbook) -> Dict[BucketKey, Decimal]:
    """Read committed bucket totals from the ``LedgerCounters`` sheet."""

    sheet = SheetName.LEDGER_COUNTERS.value
    totals: Dict[BucketKey, Decimal] = {}
    for record in iter_records(workbook, sheet):
        key = BucketKey(
            limit_id=_required_text(record, "LimitID", sheet),
            customer_id=_required_text(record, "CustomerID", sheet),
            period_type=parse_enum(PeriodType, record.get("PeriodType"), field="PeriodType"),
            bucket=_required_text(record, "Bucket", sheet),
        )
        totals[key] = _decimal(record.get("Total")) or Decimal("0")
    return totals


def write_ledger_counters(workbook: Workbook, totals: Mapping[BucketKey, Decimal]) -> None:
    """Replace the ``LedgerCounters`` rows with ``totals``, ordered by key."""

    sheet = workbook[SheetName.LEDGER_COUNTERS.value]
    if sheet.max_row > 1:
        sheet.delete_rows(2, sheet.max_row - 1)
    for key in sorted(totals, key=BucketKey.sort_key):
        sheet.append([key.limit_id, key.customer_id, key.period_type.value, key.bucket, totals[key]])
    log.debug("Wrote %d ledger counter(s)", len(totals))


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


def _optional_str(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def reservation_to_payload(reservation: Reservation) -> Dict[str, Any]:
    spec = reservation.spec
    return {
        "limit_id": spec.limit_id,
        "limit": str(spec.limit),
        "period_type": spec.period_type.value,
        "allow_override": spec.allow_override,
        "max_override_percent": _optional_str(spec.max_override_percent),
        "customer_id": reservation.customer_id,
        "bucket": reservation.key.bucket if reservation.key is not None else None,
        "quantity": str(reservation.quantity),
        "committed_total": str(reservation.committed_total),
        "new_total": str(reservation.new_total),
    }


def reservation_from_payload(payload: Mapping[str, Any]) -> Reservation:
    spec = LimitSpec(
        limit_id=payload["limit_id"],
        limit=Decimal(payload["limit"]),
        period_type=parse_enum(PeriodType, payload["period_type"], field="period_type"),
        allow_override=bool(payload.get("allow_override", False)),
        max_override_percent=_decimal(payload.get("max_override_percent")),
    )
    bucket = payload.get("bucket")
    key = None
    if bucket:
        key = BucketKey(
            limit_id=spec.limit_id,
            customer_id=payload["customer_id"],
            period_type=spec.period_type,
            bucket=bucket,
        )
    return Reservation(
        spec=spec,
        customer_id=payload["customer_id"],
        key=key,
        quantity=Decimal(payload["quantity"]),
        committed_total=Decimal(payload["committed_total"]),
        new_total=Decimal(payload["new_total"]),
    )


def violation_to_payload(violation: TransactionViolation) -> Dict[str, Any]:
    return {
        "error_code": violation.error_code,
        "message": violation.message,
        "severity": violation.severity.value,
        "can_override": violation.can_override,
        "line_number": violation.line_number,
        "substance_code": violation.substance_code,
        "threshold_id": violation.threshold_id,
        "limit": _optional_str(violation.limit),
        "actual": _optional_str(violation.actual),
    }


def violation_from_payload(payload: Mapping[str, Any]) -> TransactionViolation:
    return TransactionViolation(
        error_code=payload["error_code"],
        message=payload["message"],
        severity=parse_enum(ViolationSeverity, payload["severity"], field="severity"),
        can_override=bool(payload["can_override"]),
        line_number=payload.get("line_number"),
        substance_code=payload.get("substance_code"),
        threshold_id=payload.get("threshold_id"),
        limit=_decimal(payload.get("limit")),
        actual=_decimal(payload.get("actual")),
    )


def usage_to_payload(usage: LicenceUsage) -> Dict[str, Any]:
    return {
        "licence_id": usage.licence_id,
        "licence_number": usage.licence_number,
        "covered_quantity": str(usage.covered_quantity),
        "line_quantities": [[line, str(quantity)] for line, quantity in usage.line_quantities],
        "substance_codes": list(usage.substance_codes),
    }


def usage_from_payload(payload: Mapping[str, Any]) -> LicenceUsage:
    return LicenceUsage(
        licence_id=payload["licence_id"],
        licence_number=payload["licence_number"],
        covered_quantity=Decimal(payload["covered_quantity"]),
        line_quantities=tuple((int(line), Decimal(quantity)) for line, quantity in payload["line_quantities"]),
        substance_codes=tuple(payload.get("substance_codes", ())),
    )


def transaction_to_payload(transaction: Transaction) -> Dict[str, Any]:
    """Render a transaction, including held reservations, as JSON-safe data."""

    return {
        "transaction_id": transaction.transaction_id,
        "external_reference": transaction.external_reference,
        "customer_account": transaction.customer_account,
        "data_area_id": transaction.data_area_id,
        "transaction_type": transaction.transaction_type.value,
        "direction": transaction.direction.value,
        "transaction_date": transaction.transaction_date.isoformat(),
        "origin_country": transaction.origin_country,
        "destination_country": transaction.destination_country,
        "total_value": str(transaction.total_value),
        "validation_status": transaction.validation_status.value,
        "override_status": transaction.override_status.value,
        "lines": [
            {
                "line_number": line.line_number,
                "item_number": line.item_number,
                "data_area_id": line.data_area_id,
                "quantity": str(line.quantity),
                "substance_code": line.substance_code,
            }
            for line in transaction.lines
        ],
        "violations": [violation_to_payload(violation) for violation in transaction.violations],
        "licence_usages": [usage_to_payload(usage) for usage in transaction.licence_usages],
        "validated_at": _iso(transaction.validated_at),
        "override_actor_id": transaction.override_actor_id,
        "override_decided_at": _iso(transaction.override_decided_at),
        "override_justification": transaction.override_justification,
        "rejection_reason": transaction.rejection_reason,
        "pending_reservations": [reservation_to_payload(item) for item in transaction.pending_reservations],
    }


def transaction_from_payload(payload: Mapping[str, Any]) -> Transaction:
    return Transaction(
        transaction_id=payload["transaction_id"],
        external_reference=payload.get("external_reference") or "",
        customer_account=payload["customer_account"],
        data_area_id=payload["data_area_id"],
        transaction_type=parse_enum(TransactionType, payload["transaction_type"], field="transaction_type"),
        direction=parse_enum(TransactionDirection, payload["direction"], field="direction"),
        transaction_date=datetime.fromisoformat(payload["transaction_date"]),
        lines=[
            TransactionLine(
                line_number=int(line["line_number"]),
                item_number=line["item_number"],
                data_area_id=line["data_area_id"],
                quantity=Decimal(line["quantity"]),
                substance_code=line.get("substance_code"),
            )
            for line in payload.get("lines", [])
        ],
        origin_country=payload.get("origin_country"),
        destination_country=payload.get("destination_country"),
        total_value=Decimal(payload.get("total_value") or "0"),
        validation_status=parse_enum(ValidationStatus, payload["validation_status"], field="validation_status"),
        override_status=parse_enum(OverrideStatus, payload.get("override_status"), field="override_status",
                                   default=OverrideStatus.NONE),
        violations=[violation_from_payload(item) for item in payload.get("violations", [])],
        licence_usages=[usage_from_payload(item) for item in payload.get("licence_usages", [])],
        validated_at=_parse_datetime(payload.get("validated_at")),
        override_actor_id=payload.get("override_actor_id"),
        override_decided_at=_parse_datetime(payload.get("override_decided_at")),
        override_justification=payload.get("override_justification"),
        rejection_reason=payload.get("rejection_reason"),
        pending_reservations=[reservation_from_payload(item) for item in payload.get("pending_reservations", [])],
    )


def serialize_transaction(transaction: Transaction) -> list[object]:
    """Convert a transaction into the ``Transactions`` column order."""

    return [
        transaction.transaction_id,
        transaction.external_reference,
        transaction.customer_account,
        transaction.validation_status.value,
        transaction.override_status.value,
        _iso(transaction.validated_at),
        json.dumps(transaction_to_payload(transaction)),
    ]


def deserialize_transaction(record: Mapping[str, object]) -> Transaction:
    payload = record.get("Payload")
    if not payload:
        raise DataIntegrityError(f"Transaction '{record.get('TransactionID')}' has no payload")
    return transaction_from_payload(json.loads(str(payload)))


def iter_transactions(workbook: Workbook) -> Iterator[Transaction]:
    for record in iter_records(workbook, SheetName.TRANSACTIONS.value):
        yield deserialize_transaction(record)


def upsert_transaction(workbook: Workbook, transaction: Transaction) -> None:
    """Write ``transaction`` over its existing row, or append it."""

    sheet_name = SheetName.TRANSACTIONS.value
    values = serialize_transaction(transaction)
    row_index = locate_row(workbook, sheet_name, "TransactionID", transaction.transaction_id)
    sheet = workbook[sheet_name]
    if row_index is None:
        sheet.append(values)
        return
    for column, value in enumerate(values, start=1):
        sheet.cell(row=row_index, column=column, value=value)


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


def serialize_audit_event(event: AuditEvent) -> list[object]:
    return [
        event.event_id,
        event.occurred_at.isoformat(),
        event.event_type.value,
        event.entity_id,
        event.actor_id,
        json.dumps(event.details, default=str),
    ]


def deserialize_audit_event(record: Mapping[str, object]) -> AuditEvent:
    sheet = SheetName.AUDIT_LOG.value
    details = record.get("Details")
    return AuditEvent(
        event_type=parse_enum(AuditEventType, record.get("EventType"), field="EventType"),
        entity_id=_required_text(record, "EntityID", sheet),
        actor_id=_text(record.get("ActorID")),
        occurred_at=_parse_datetime(record.get("OccurredAt")) or datetime.min,
        details=json.loads(str(details)) if details else {},
        event_id=_required_text(record, "EventID", sheet),
    )


def append_audit_event(workbook: Workbook, event: AuditEvent) -> None:
    workbook[SheetName.AUDIT_LOG.value].append(serialize_audit_event(event))


def iter_audit_events(workbook: Workbook) -> Iterator[AuditEvent]:
    for record in iter_records(workbook, SheetName.AUDIT_LOG.value):
        yield deserialize_audit_event(record)


def write_transactions(workbook: Workbook, transactions: Iterable[Transaction]) -> None:
    count = 0
    for transaction in transactions:
        upsert_transaction(workbook, transaction)
        count += 1
    log.debug("Wrote %d transaction(s)", count)


__all__ = [
    "CONFIG_FILE_NAME",
    "SHEET_COLUMNS",
    "ConfigSettings",
    "ProductRow",
    "SubstanceRow",
    "CorridorRow",
    "find_config_file",
    "read_config",
    "parse_settings",
    "open_workbook",
    "save_workbook",
    "iter_records",
    "append_record",
    "locate_row",
    "iter_customers",
    "iter_products",
    "iter_substances",
    "iter_licences",
    "iter_licence_substances",
    "iter_thresholds",
    "iter_corridors",
    "load_ledger_counters",
    "write_ledger_counters",
    "transaction_to_payload",
    "transaction_from_payload",
    "serialize_transaction",
    "deserialize_transaction",
    "iter_transactions",
    "upsert_transaction",
    "write_transactions",
    "append_audit_event",
    "iter_audit_events",
]
