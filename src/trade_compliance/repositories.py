"""Collaborator contracts consumed by the validation engine.

Master data lives behind small repository protocols so the engine never knows
whether it is talking to a workbook, a database or a remote service. The
in-memory implementations below back the workbook runtime and the tests.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import date
from typing import ContextManager, Dict, Iterable, List, Optional, Protocol, Set, Tuple

from . import log
from .constants import BusinessCategory, ThresholdType, ValidationStatus
from .errors import TransactionNotFound
from .locking import KeyedLocks
from .models import (
    AuditEvent,
    Holder,
    Licence,
    LicenceSubstanceMapping,
    Threshold,
    Transaction,
    validate_mappings,
)


class LicenceRepository(Protocol):
    def find_active_mappings(
        self, substance_code: str, holder: Holder, as_of: date
    ) -> List[LicenceSubstanceMapping]:
        """Return mappings for ``substance_code`` effective on ``as_of``, with ``licence`` populated."""


class ThresholdRepository(Protocol):
    def find_applicable(
        self, substance_code: str, holder: Holder, licence_type_id: Optional[str] = None
    ) -> List[Threshold]:
        """Return every threshold whose scope discriminators match."""

    def find_frequency(self, holder: Holder) -> List[Threshold]:
        """Return the frequency thresholds scoped to ``holder`` or its category."""


class CustomerRepository(Protocol):
    def resolve(self, account: str, data_area_id: str) -> Optional[Holder]:
        """Return the holder identity behind ``account``, or ``None`` when unknown."""


class ProductRepository(Protocol):
    def resolve_substance(self, item_number: str, data_area_id: str) -> Optional[str]:
        """Return the controlled substance code of a product, ``None`` for uncontrolled products."""

    def regulatory_list(self, substance_code: str) -> Optional[str]:
        """Return the regulatory list a substance is scheduled on."""

    def substance_exists(self, substance_code: str) -> bool:
        """Return ``True`` when the substance master knows ``substance_code``."""


class CorridorRepository(Protocol):
    def is_permitted(
        self, origin: str, destination: str, holder_category: Optional[BusinessCategory] = None
    ) -> bool:
        """Return ``True`` when trade from ``origin`` to ``destination`` is allowed."""


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None:
        """Append ``event`` to the audit trail."""


class InMemoryLicenceRepository:
    """Licences and their substance mappings held in process memory."""

    def __init__(
        self,
        licences: Iterable[Licence] = (),
        mappings: Iterable[LicenceSubstanceMapping] = (),
    ) -> None:
        self._licences: Dict[str, Licence] = {licence.licence_id: licence for licence in licences}
        self._mappings: List[LicenceSubstanceMapping] = []
        for mapping in mappings:
            licence = self._licences.get(mapping.licence_id)
            if licence is None:
                log.warning(
                    "Ignoring mapping '%s' for unknown licence '%s'",
                    mapping.mapping_id,
                    mapping.licence_id,
                )
                continue
            self._mappings.append(replace(mapping, licence=licence))
        validate_mappings(self._mappings)

    def find_active_mappings(
        self, substance_code: str, holder: Holder, as_of: date
    ) -> List[LicenceSubstanceMapping]:
        code = substance_code.upper()
        return [
            mapping
            for mapping in self._mappings
            if mapping.substance_code.upper() == code
            and mapping.is_effective(as_of)
            and mapping.licence is not None
            and mapping.licence.is_held_by(holder)
        ]

    def find_by_number(self, licence_number: str) -> Optional[Licence]:
        wanted = licence_number.strip().upper()
        for licence in self._licences.values():
            if licence.licence_number.upper() == wanted:
                return licence
        return None

    def mappings_for(self, licence_id: str) -> List[LicenceSubstanceMapping]:
        return [mapping for mapping in self._mappings if mapping.licence_id == licence_id]


class InMemoryThresholdRepository:
    def __init__(self, thresholds: Iterable[Threshold] = ()) -> None:
        self._thresholds = list(thresholds)

    def find_applicable(
        self, substance_code: str, holder: Holder, licence_type_id: Optional[str] = None
    ) -> List[Threshold]:
        return [
            threshold
            for threshold in self._thresholds
            if threshold.applies_to(substance_code, holder, licence_type_id)
        ]

    def find_frequency(self, holder: Holder) -> List[Threshold]:
        return [
            threshold
            for threshold in self._thresholds
            if threshold.threshold_type is ThresholdType.FREQUENCY and threshold.applies_to_holder(holder)
        ]


class InMemoryCustomerRepository:
    def __init__(self, holders: Iterable[Holder] = ()) -> None:
        self._holders: Dict[Tuple[str, str], Holder] = {
            (holder.account.upper(), holder.data_area_id.upper()): holder for holder in holders
        }

    def resolve(self, account: str, data_area_id: str) -> Optional[Holder]:
        return self._holders.get((account.strip().upper(), data_area_id.strip().upper()))


class InMemoryProductRepository:
    """Product-to-substance attribution and the substance master.

    The master holds every code in ``substances`` plus every code with a
    regulatory list.
    """

    def __init__(
        self,
        products: Optional[Dict[Tuple[str, str], Optional[str]]] = None,
        regulatory_lists: Optional[Dict[str, str]] = None,
        substances: Iterable[str] = (),
    ) -> None:
        self._products: Dict[Tuple[str, str], Optional[str]] = {
            (item.upper(), area.upper()): code for (item, area), code in (products or {}).items()
        }
        self._lists: Dict[str, str] = {
            code.upper(): listing for code, listing in (regulatory_lists or {}).items()
        }
        self._substances: Set[str] = {code.upper() for code in substances} | set(self._lists)

    def resolve_substance(self, item_number: str, data_area_id: str) -> Optional[str]:
        return self._products.get((item_number.strip().upper(), data_area_id.strip().upper()))

    def regulatory_list(self, substance_code: str) -> Optional[str]:
        return self._lists.get(substance_code.upper())

    def substance_exists(self, substance_code: str) -> bool:
        return substance_code.upper() in self._substances


class InMemoryCorridorRepository:
    """Permitted country pairs, optionally restricted to one business category."""

    def __init__(
        self, corridors: Iterable[Tuple[str, str, Optional[BusinessCategory]]] = ()
    ) -> None:
        self._corridors: Set[Tuple[str, str, Optional[BusinessCategory]]] = {
            (origin.upper(), destination.upper(), category)
            for origin, destination, category in corridors
        }

    def is_permitted(
        self, origin: str, destination: str, holder_category: Optional[BusinessCategory] = None
    ) -> bool:
        pair = (origin.upper(), destination.upper())
        return (*pair, None) in self._corridors or (*pair, holder_category) in self._corridors


class LoggingAuditSink:
    """Audit sink that writes events to the package log."""

    def record(self, event: AuditEvent) -> None:
        log.info(
            "Audit %s for '%s' by %s: %s",
            event.event_type.value,
            event.entity_id,
            event.actor_id or "system",
            event.details,
        )


class InMemoryAuditSink:
    def __init__(self) -> None:
        self.events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def record(self, event: AuditEvent) -> None:
        with self._lock:
            self.events.append(event)


class TransactionStore:
    """Transactions keyed by identifier with a single writer per key.

    Callers that read-modify-write a transaction hold :meth:`lock_for` for the
    duration of the change.
    """

    def __init__(self, transactions: Iterable[Transaction] = ()) -> None:
        self._transactions: Dict[str, Transaction] = {
            transaction.transaction_id: transaction for transaction in transactions
        }
        self._locks: KeyedLocks[str] = KeyedLocks(threading.RLock)
        self._registry_lock = threading.Lock()

    def lock_for(self, transaction_id: str) -> ContextManager[None]:
        return self._locks.hold(transaction_id)

    def get(self, transaction_id: str) -> Transaction:
        try:
            return self._transactions[transaction_id]
        except KeyError as exc:
            log.warning("Transaction lookup failed for id '%s'", transaction_id)
            raise TransactionNotFound(f"Unknown transaction id: {transaction_id}") from exc

    def save(self, transaction: Transaction) -> None:
        with self._registry_lock:
            self._transactions[transaction.transaction_id] = transaction

    def __contains__(self, transaction_id: object) -> bool:
        return transaction_id in self._transactions

    def all(self) -> List[Transaction]:
        with self._registry_lock:
            return list(self._transactions.values())

    def list_by_status(self, status: ValidationStatus) -> List[Transaction]:
        return [
            transaction for transaction in self.all() if transaction.validation_status is status
        ]


__all__ = [
    "LicenceRepository",
    "ThresholdRepository",
    "CustomerRepository",
    "ProductRepository",
    "CorridorRepository",
    "AuditSink",
    "InMemoryLicenceRepository",
    "InMemoryThresholdRepository",
    "InMemoryCustomerRepository",
    "InMemoryProductRepository",
    "InMemoryCorridorRepository",
    "LoggingAuditSink",
    "InMemoryAuditSink",
    "TransactionStore",
]
