"""Business logic layer for the workbook-backed compliance runtime.

This module wires the validation engine and override workflow to the master
workbook: it loads master data into the in-memory repositories, restores the
ledger and the transaction store, decodes JSON validation requests at the
boundary and writes every outcome back through the data access layer.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    TransactionDirection,
    TransactionType,
    ValidationStatus,
    parse_enum,
)
from .engine import ValidationEngine
from .errors import InvalidRequest
from .ledger import BucketKey, ThresholdLedger
from .models import (
    Actor,
    AuditEvent,
    Licence,
    LicenceSubstanceMapping,
    OverrideResult,
    Transaction,
    TransactionLine,
    TransactionValidationResult,
)
from .repositories import (
    InMemoryCorridorRepository,
    InMemoryCustomerRepository,
    InMemoryLicenceRepository,
    InMemoryProductRepository,
    InMemoryThresholdRepository,
    TransactionStore,
)
from .workflow import OverrideWorkflow


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class Repositories:
    licences: InMemoryLicenceRepository
    thresholds: InMemoryThresholdRepository
    customers: InMemoryCustomerRepository
    products: InMemoryProductRepository
    corridors: InMemoryCorridorRepository


class WorkbookAuditSink:
    """Audit sink appending events to the workbook's ``AuditLog`` sheet."""

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook
        self._lock = threading.Lock()

    def record(self, event: AuditEvent) -> None:
        with self._lock:
            data_manager.append_audit_event(self.workbook, event)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _cached(context: RuntimeContext, name: str, build) -> Any:
    value = context._cache.get(name)
    if value is None:
        log.debug("Initializing runtime component '%s'", name)
        value = build()
        context._cache[name] = value
    return value


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def get_repositories(context: RuntimeContext) -> Repositories:
    """Build (once) the master-data repositories from the workbook sheets.

    Raises:
        DataIntegrityError: If the licence mappings break their invariants.
        InvalidEnumValue: If a sheet cell names an unknown enum member.
    """

    def _build() -> Repositories:
        workbook = context.workbook
        products = list(data_manager.iter_products(workbook))
        substances = list(data_manager.iter_substances(workbook))
        repositories = Repositories(
            licences=InMemoryLicenceRepository(
                data_manager.iter_licences(workbook),
                data_manager.iter_licence_substances(workbook),
            ),
            thresholds=InMemoryThresholdRepository(data_manager.iter_thresholds(workbook)),
            customers=InMemoryCustomerRepository(data_manager.iter_customers(workbook)),
            products=InMemoryProductRepository(
                {(row.item_number, row.data_area_id): row.substance_code for row in products},
                {row.substance_code: row.regulatory_list for row in substances if row.regulatory_list},
                [row.substance_code for row in substances],
            ),
            corridors=InMemoryCorridorRepository(
                (row.origin_country, row.destination_country, row.customer_category)
                for row in data_manager.iter_corridors(workbook)
            ),
        )
        log.debug("Loaded master data: %d product(s), %d substance(s)", len(products), len(substances))
        return repositories

    return _cached(context, "repositories", _build)


def get_ledger(context: RuntimeContext) -> ThresholdLedger:
    return _cached(
        context, "ledger", lambda: ThresholdLedger(data_manager.load_ledger_counters(context.workbook))
    )


def get_store(context: RuntimeContext) -> TransactionStore:
    return _cached(
        context, "store", lambda: TransactionStore(data_manager.iter_transactions(context.workbook))
    )


def get_audit_sink(context: RuntimeContext) -> WorkbookAuditSink:
    return _cached(context, "audit_sink", lambda: WorkbookAuditSink(context.workbook))


def get_engine(context: RuntimeContext) -> ValidationEngine:
    def _build() -> ValidationEngine:
        repositories = get_repositories(context)
        return ValidationEngine(
            licences=repositories.licences,
            thresholds=repositories.thresholds,
            customers=repositories.customers,
            products=repositories.products,
            corridors=repositories.corridors,
            ledger=get_ledger(context),
            store=get_store(context),
            audit_sink=get_audit_sink(context),
            max_commit_retries=context.settings.max_commit_retries,
            default_warning_percent=context.settings.default_warning_percent,
        )

    return _cached(context, "engine", _build)


def get_workflow(context: RuntimeContext) -> OverrideWorkflow:
    def _build() -> OverrideWorkflow:
        settings = context.settings
        max_age = timedelta(hours=settings.max_override_age_hours) if settings.max_override_age_hours > 0 else None
        return OverrideWorkflow(
            get_store(context),
            get_ledger(context),
            audit_sink=get_audit_sink(context),
            authorized_roles=settings.authorized_roles,
            min_justification_length=settings.min_justification_length,
            max_override_age=max_age,
        )

    return _cached(context, "workflow", _build)


def generate_transaction_id(*, prefix: str = "T", when: Optional[datetime] = None) -> str:
    """Generate a sortable transaction identifier using UTC timestamps.

    Args:
        prefix (str): Designator prepended to the identifier.
        when (datetime | None): Timestamp used to produce the identifier. When
            ``None`` the current UTC time is used.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}``.
    """

    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"


def _required(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if value is None or not str(value).strip():
        raise InvalidRequest(f"'{key}' is required")
    return str(value).strip()


def _quantity(raw: Any, line_number: int) -> Decimal:
    try:
        quantity = Decimal(str(raw))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidRequest(f"Line {line_number}: quantity {raw!r} is not a number") from exc
    if not quantity.is_finite() or quantity <= Decimal("0"):
        raise InvalidRequest(f"Line {line_number}: quantity must be greater than zero")
    return quantity


def _line_number(raw: Any, index: int) -> int:
    if raw is None or raw == "":
        return index
    try:
        number = int(str(raw).strip())
    except ValueError as exc:
        raise InvalidRequest(f"Line {index}: lineNumber {raw!r} is not an integer") from exc
    if number <= 0:
        raise InvalidRequest(f"Line {index}: lineNumber must be greater than zero")
    return number


def _transaction_date(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    try:
        moment = datetime.fromisoformat(str(raw))
    except ValueError as exc:
        raise InvalidRequest(f"transactionDate {raw!r} is not an ISO 8601 timestamp") from exc
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=UTC)


def decode_transaction(payload: Mapping[str, Any], *, now: Optional[datetime] = None) -> Transaction:
    """Decode a JSON validation request into a ``Pending`` transaction.

    The request uses the REST layer's camelCase field names::

        {"externalId": "SO-1", "customerAccount": "C-001", "customerDataAreaId": "nl01",
         "transactionType": "Order", "direction": "Outbound",
         "originCountry": "NL", "destinationCountry": "DE",
         "lines": [{"itemNumber": "MORPH-10", "dataAreaId": "nl01", "quantity": "300"}]}

    Lines never carry a substance code; it is resolved from the product master.

    Args:
        payload (Mapping[str, Any]): Parsed request body.
        now (datetime | None): Moment used for the identifier and as the
            default transaction date.

    Returns:
        Transaction: A new transaction in ``Pending`` state.

    Raises:
        InvalidRequest: If a required field is missing, a line number is
            invalid or repeated, or a quantity is invalid.
        InvalidEnumValue: If ``transactionType`` or ``direction`` is unknown.
    """

    if not isinstance(payload, Mapping):
        raise InvalidRequest("Request body must be a JSON object")
    moment = _resolve_timestamp(now)

    raw_lines = payload.get("lines") or []
    if not isinstance(raw_lines, list) or not raw_lines:
        raise InvalidRequest("At least one transaction line is required")

    data_area_id = _required(payload, "customerDataAreaId")
    lines: List[TransactionLine] = []
    seen: Set[int] = set()
    for index, raw_line in enumerate(raw_lines, start=1):
        if not isinstance(raw_line, Mapping):
            raise InvalidRequest(f"Line {index} must be a JSON object")
        line_number = _line_number(raw_line.get("lineNumber"), index)
        if line_number in seen:
            raise InvalidRequest(f"Line number {line_number} appears more than once")
        seen.add(line_number)
        lines.append(
            TransactionLine(
                line_number=line_number,
                item_number=_required(raw_line, "itemNumber"),
                data_area_id=str(raw_line.get("dataAreaId") or data_area_id).strip(),
                quantity=_quantity(raw_line.get("quantity"), line_number),
            )
        )

    try:
        total_value = Decimal(str(payload.get("totalValue") or "0"))
    except InvalidOperation as exc:
        raise InvalidRequest(f"totalValue {payload.get('totalValue')!r} is not a number") from exc

    return Transaction(
        transaction_id=str(payload.get("transactionId") or generate_transaction_id(when=moment)),
        external_reference=_required(payload, "externalId"),
        customer_account=_required(payload, "customerAccount"),
        data_area_id=data_area_id,
        transaction_type=parse_enum(TransactionType, payload.get("transactionType"), field="transactionType"),
        direction=parse_enum(TransactionDirection, payload.get("direction"), field="direction"),
        transaction_date=_transaction_date(payload.get("transactionDate")) or moment,
        lines=lines,
        origin_country=payload.get("originCountry"),
        destination_country=payload.get("destinationCountry"),
        total_value=total_value,
    )


def _number(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def encode_result(result: TransactionValidationResult) -> Dict[str, Any]:
    """Render a validation result as JSON-safe data for the CLI."""

    return {
        "transactionId": result.transaction_id,
        "status": result.status.value,
        "isValid": result.is_valid,
        "canProceed": result.can_proceed,
        "canOverride": result.can_override,
        "violations": [
            {
                "code": violation.error_code,
                "message": violation.message,
                "severity": violation.severity.value,
                "canOverride": violation.can_override,
                "lineNumber": violation.line_number,
                "substanceCode": violation.substance_code,
                "thresholdId": violation.threshold_id,
                "limit": _number(violation.limit),
                "actual": _number(violation.actual),
            }
            for violation in result.violations
        ],
        "licenceUsages": [
            {
                "licenceId": usage.licence_id,
                "licenceNumber": usage.licence_number,
                "quantityUsed": str(usage.covered_quantity),
                "substanceCodes": list(usage.substance_codes),
                "lines": [
                    {"lineNumber": line_number, "quantity": str(quantity)}
                    for line_number, quantity in usage.line_quantities
                ],
            }
            for usage in result.licence_usages
        ],
        "validationTimeMs": round(result.validation_time_ms, 3),
    }


def encode_override_result(result: OverrideResult) -> Dict[str, Any]:
    return {
        "transactionId": result.transaction_id,
        "status": result.status.value,
        "overrideStatus": result.override_status.value,
        "actorId": result.actor_id,
        "decidedAt": result.decided_at.isoformat(),
    }


def validate_transaction(
    context: RuntimeContext,
    transaction: Transaction,
    *,
    cancel: Optional[threading.Event] = None,
) -> TransactionValidationResult:
    """Validate a transaction and stage its outcome in the workbook.

    The validated transaction and the ledger counters are written to the
    in-memory workbook; call :func:`persist_context` to save them.

    Raises:
        InfrastructureFailure: If master data lookups fail.
        ValidationCancelled: If ``cancel`` was set before the commit.
    """

    result = get_engine(context).validate(transaction, cancel=cancel)
    _stage(context, transaction)
    return result


def approve_override(
    context: RuntimeContext, transaction_id: str, actor: Actor, justification: str
) -> OverrideResult:
    """Approve a pending override and stage the new state in the workbook."""

    result = get_workflow(context).approve(transaction_id, actor, justification)
    _stage(context, get_store(context).get(transaction_id))
    return result


def reject_override(context: RuntimeContext, transaction_id: str, actor: Actor, reason: str) -> OverrideResult:
    """Reject a pending override and stage the new state in the workbook."""

    result = get_workflow(context).reject(transaction_id, actor, reason)
    _stage(context, get_store(context).get(transaction_id))
    return result


def list_pending_overrides(context: RuntimeContext) -> List[Transaction]:
    return get_workflow(context).pending()


def list_transactions(context: RuntimeContext, status: Optional[ValidationStatus] = None) -> List[Transaction]:
    store = get_store(context)
    if status is None:
        return store.all()
    return store.list_by_status(status)


def lookup_licence(
    context: RuntimeContext, licence_number: str
) -> Optional[Tuple[Licence, List[LicenceSubstanceMapping]]]:
    """Return a licence and its substance mappings, or ``None`` when unknown."""

    licences = get_repositories(context).licences
    licence = licences.find_by_number(licence_number)
    if licence is None:
        log.warning("Licence lookup failed for number '%s'", licence_number)
        return None
    return licence, licences.mappings_for(licence.licence_id)


def ledger_totals(context: RuntimeContext) -> Dict[BucketKey, Decimal]:
    return get_ledger(context).snapshot()


def _stage(context: RuntimeContext, transaction: Transaction) -> None:
    data_manager.upsert_transaction(context.workbook, transaction)
    data_manager.write_ledger_counters(context.workbook, get_ledger(context).snapshot())


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file."""

    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


__all__ = [
    "RuntimeContext",
    "Repositories",
    "WorkbookAuditSink",
    "load_runtime_context",
    "ensure_schema_version",
    "get_repositories",
    "get_ledger",
    "get_store",
    "get_audit_sink",
    "get_engine",
    "get_workflow",
    "generate_transaction_id",
    "decode_transaction",
    "encode_result",
    "encode_override_result",
    "validate_transaction",
    "approve_override",
    "reject_override",
    "list_pending_overrides",
    "list_transactions",
    "lookup_licence",
    "ledger_totals",
    "persist_context",
]
