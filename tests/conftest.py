"""Shared pytest fixtures and utilities for the compliance engine tests."""

from __future__ import annotations

import argparse
import itertools
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional, Sequence
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from trade_compliance import cli, constants, core_logic, data_manager  # noqa: E402
from trade_compliance.constants import (  # noqa: E402
    BusinessCategory,
    HolderType,
    LicenceStatus,
    PeriodType,
    PermittedActivity,
    TransactionDirection,
    TransactionType,
)
from trade_compliance.engine import ValidationEngine  # noqa: E402
from trade_compliance.ledger import ThresholdLedger  # noqa: E402
from trade_compliance.models import (  # noqa: E402
    Actor,
    Holder,
    Licence,
    LicenceSubstanceMapping,
    Threshold,
    Transaction,
    TransactionLine,
)
from trade_compliance.repositories import (  # noqa: E402
    InMemoryAuditSink,
    InMemoryCorridorRepository,
    InMemoryCustomerRepository,
    InMemoryLicenceRepository,
    InMemoryProductRepository,
    InMemoryThresholdRepository,
    TransactionStore,
)
from trade_compliance.workflow import OverrideWorkflow  # noqa: E402
from setup_excel import create_master_workbook  # noqa: E402

FIXED_NOW = datetime(2026, 3, 10, 9, 30, tzinfo=UTC)
DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
ALL_ACTIVITIES = (
    PermittedActivity.POSSESS
    | PermittedActivity.STORE
    | PermittedActivity.DISTRIBUTE
    | PermittedActivity.IMPORT
    | PermittedActivity.EXPORT
)

_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Validation]\n"
    "MaxCommitRetries = 3\n"
    "DefaultWarningPercent = 80\n\n"
    "[Override]\n"
    "AuthorizedRoles = ComplianceManager\n"
    "MinJustificationLength = 20\n"
    "MaxOverrideAgeHours = {max_override_age_hours}\n"
)

# Workbook master data: customer C with the WDA licence, plus an overridable daily threshold.
SEED_ROWS: Mapping[str, Sequence[Mapping[str, object]]] = {
    "Customers": [
        {
            "CustomerID": "CUST-C",
            "Account": "C-001",
            "DataAreaID": "nl01",
            "BusinessName": "Apotheek Centraal",
            "Category": "WholesalerEU",
            "IsSuspended": False,
            "ApprovalStatus": "Approved",
            "GdpQualificationStatus": "ConditionallyApproved",
        },
        {
            "CustomerID": "CUST-S",
            "Account": "S-001",
            "DataAreaID": "nl01",
            "BusinessName": "Suspended Trading",
            "Category": "CommunityPharmacy",
            "IsSuspended": True,
        },
    ],
    "Products": [
        {"ItemNumber": "MORPH-10", "DataAreaID": "nl01", "ProductName": "Morphine 10mg", "SubstanceCode": "MORPH"},
        {"ItemNumber": "PARA-500", "DataAreaID": "nl01", "ProductName": "Paracetamol 500mg", "SubstanceCode": None},
    ],
    "Substances": [
        {"SubstanceCode": "MORPH", "SubstanceName": "Morphine", "RegulatoryList": "OpiumAct-I"},
    ],
    "Licences": [
        {
            "LicenceID": "LIC-WDA",
            "LicenceNumber": "WDA-NL-001",
            "HolderType": "Customer",
            "HolderID": "CUST-C",
            "IssuingAuthority": "IGJ",
            "IssueDate": "2024-01-01",
            "ExpiryDate": "2027-01-01",
            "Status": "Valid",
            "PermittedActivities": "Possess,Store,Distribute,Import,Export",
            "LicenceTypeID": "WDA",
        },
    ],
    "LicenceSubstances": [
        {
            "MappingID": "MAP-MORPH",
            "LicenceID": "LIC-WDA",
            "SubstanceCode": "MORPH",
            "EffectiveDate": "2024-01-01",
            "MaxQuantityPerTransaction": 500,
        },
    ],
    "Thresholds": [
        {
            "ThresholdID": "THR-MORPH-DAY",
            "Name": "Morphine daily",
            "SubstanceCode": "MORPH",
            "LimitValue": 1000,
            "LimitUnit": "g",
            "PeriodType": "Daily",
            "AllowOverride": True,
            "IsActive": True,
        },
    ],
    "Corridors": [
        {"OriginCountry": "NL", "DestinationCountry": "DE"},
    ],
}


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str


@dataclass
class ComplianceWorld:
    """An engine and workflow wired to in-memory collaborators."""

    engine: ValidationEngine
    workflow: OverrideWorkflow
    ledger: ThresholdLedger
    store: TransactionStore
    audit: InMemoryAuditSink
    clock: "FakeClock"


@dataclass
class FakeClock:
    now: datetime = FIXED_NOW

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


# ---------------------------------------------------------------------------
# Domain fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def customer_c() -> Holder:
    return Holder(
        customer_id="CUST-C",
        account="C-001",
        data_area_id="nl01",
        category=BusinessCategory.WHOLESALER_EU,
        business_name="Apotheek Centraal",
    )


@pytest.fixture
def wda_licence() -> Licence:
    return Licence(
        licence_id="LIC-WDA",
        licence_number="WDA-NL-001",
        holder_type=HolderType.CUSTOMER,
        holder_id="CUST-C",
        issuing_authority="IGJ",
        issue_date=date(2024, 1, 1),
        expiry_date=date(2027, 1, 1),
        status=LicenceStatus.VALID,
        permitted_activities=ALL_ACTIVITIES,
        licence_type_id="WDA",
    )


@pytest.fixture
def morph_mapping() -> LicenceSubstanceMapping:
    return LicenceSubstanceMapping(
        mapping_id="MAP-MORPH",
        licence_id="LIC-WDA",
        substance_code="MORPH",
        effective_date=date(2024, 1, 1),
        max_quantity_per_transaction=Decimal("500"),
    )


@pytest.fixture
def daily_threshold() -> Threshold:
    return Threshold(
        threshold_id="THR-MORPH-DAY",
        name="Morphine daily",
        limit_value=Decimal("1000"),
        period_type=PeriodType.DAILY,
        substance_code="MORPH",
        allow_override=False,
    )


@pytest.fixture
def manager() -> Actor:
    return Actor(actor_id="u.vries", roles=frozenset({constants.COMPLIANCE_MANAGER_ROLE}))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def world_factory(
    customer_c: Holder,
    wda_licence: Licence,
    morph_mapping: LicenceSubstanceMapping,
    clock: FakeClock,
) -> Callable[..., ComplianceWorld]:
    """Build engine/workflow pairs over configurable master data.

    Omitted arguments default to customer C holding the WDA licence that
    covers up to 500 g of morphine per transaction.
    """

    def _build(
        *,
        holders: Optional[Iterable[Holder]] = None,
        licences: Optional[Iterable[Licence]] = None,
        mappings: Optional[Iterable[LicenceSubstanceMapping]] = None,
        thresholds: Iterable[Threshold] = (),
        products: Optional[dict] = None,
        regulatory_lists: Optional[dict] = None,
        corridors: Iterable[tuple] = (("NL", "DE", None),),
        ledger: Optional[ThresholdLedger] = None,
        max_override_age=None,
        **engine_options: Any,
    ) -> ComplianceWorld:
        ledger = ledger or ThresholdLedger()
        store = TransactionStore()
        audit = InMemoryAuditSink()
        engine = ValidationEngine(
            licences=InMemoryLicenceRepository(
                [wda_licence] if licences is None else licences,
                [morph_mapping] if mappings is None else mappings,
            ),
            thresholds=InMemoryThresholdRepository(thresholds),
            customers=InMemoryCustomerRepository([customer_c] if holders is None else holders),
            products=InMemoryProductRepository(
                products if products is not None else {("MORPH-10", "nl01"): "MORPH", ("PARA-500", "nl01"): None},
                regulatory_lists if regulatory_lists is not None else {"MORPH": "OpiumAct-I"},
            ),
            corridors=InMemoryCorridorRepository(corridors),
            ledger=ledger,
            store=store,
            audit_sink=audit,
            clock=clock,
            **engine_options,
        )
        workflow = OverrideWorkflow(
            store,
            ledger,
            audit_sink=audit,
            max_override_age=max_override_age,
            clock=clock,
        )
        return ComplianceWorld(engine=engine, workflow=workflow, ledger=ledger, store=store, audit=audit, clock=clock)

    return _build


@pytest.fixture
def world(world_factory: Callable[..., ComplianceWorld]) -> ComplianceWorld:
    return world_factory()


@pytest.fixture
def transaction_factory() -> Callable[..., Transaction]:
    """Create pending transactions for customer C.

    ``lines`` is a list of ``(item_number, quantity)`` pairs numbered from 1.
    """

    counter = itertools.count(1)

    def _make(
        lines: Sequence[tuple] = (("MORPH-10", "300"),),
        *,
        transaction_id: Optional[str] = None,
        account: str = "C-001",
        transaction_type: TransactionType = TransactionType.ORDER,
        direction: TransactionDirection = TransactionDirection.INTERNAL,
        origin_country: Optional[str] = "NL",
        destination_country: Optional[str] = "NL",
        transaction_date: datetime = FIXED_NOW,
    ) -> Transaction:
        sequence = next(counter)
        return Transaction(
            transaction_id=transaction_id or f"T-{sequence:04d}",
            external_reference=f"SO-{sequence:04d}",
            customer_account=account,
            data_area_id="nl01",
            transaction_type=transaction_type,
            direction=direction,
            transaction_date=transaction_date,
            lines=[
                TransactionLine(
                    line_number=number,
                    item_number=item,
                    data_area_id="nl01",
                    quantity=Decimal(str(quantity)),
                )
                for number, (item, quantity) in enumerate(lines, start=1)
            ],
            origin_country=origin_country,
            destination_country=destination_country,
        )

    return _make


# ---------------------------------------------------------------------------
# Workbook and configuration fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        seed_rows: Optional[Mapping[str, Sequence[Mapping[str, object]]]] = SEED_ROWS,
        filename: str = "compliance_master_data.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, seed_rows=seed_rows, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        max_override_age_hours: int = 0,
        seed_rows: Optional[Mapping[str, Sequence[Mapping[str, object]]]] = SEED_ROWS,
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=bundle_dir.name, seed_rows=seed_rows)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                schema_version=schema_version,
                max_override_age_hours=max_override_age_hours,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def subparsers_action() -> argparse._SubParsersAction[argparse.ArgumentParser]:
    parser = argparse.ArgumentParser(prog="compliance-cli")
    return parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


@pytest.fixture
def mock_context(tmp_path: Path) -> core_logic.RuntimeContext:
    """A runtime context over a mock workbook for orchestration tests."""

    settings = data_manager.ConfigSettings(
        data_file=tmp_path / "compliance_master_data.xlsx",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )
    return core_logic.RuntimeContext(settings=settings, workbook=Mock(name="workbook"))
