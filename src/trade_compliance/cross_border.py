"""Direction and corridor checks applied once per transaction."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from . import log
from .constants import BusinessCategory, ErrorCode, TransactionDirection
from .repositories import CorridorRepository


@dataclass(frozen=True)
class CrossBorderFinding:
    error_code: ErrorCode
    message: str
    origin_country: Optional[str] = None
    destination_country: Optional[str] = None


def normalize_country(raw: Optional[str]) -> Optional[str]:
    """Upper-case an ISO country code, mapping blanks to ``None``."""

    if raw is None:
        return None
    value = str(raw).strip().upper()
    return value or None


class CrossBorderPolicy:
    """Table-driven origin/destination rules keyed by transaction direction.

    * ``Internal`` movements must start and end in the same country.
    * ``Inbound`` and ``Outbound`` movements need both countries and a
      permitted corridor between them.
    """

    def __init__(self, corridors: CorridorRepository) -> None:
        self.corridors = corridors

    def validate(
        self,
        direction: TransactionDirection,
        origin_country: Optional[str],
        destination_country: Optional[str],
        holder_category: Optional[BusinessCategory] = None,
    ) -> Optional[CrossBorderFinding]:
        """Return the first rule the movement breaks, or ``None``.

        Args:
            direction (TransactionDirection): Movement direction.
            origin_country (str | None): Country the goods leave from.
            destination_country (str | None): Country the goods arrive in.
            holder_category (BusinessCategory | None): Category of the holder,
                passed to the corridor lookup for category-restricted routes.

        Returns:
            CrossBorderFinding | None: The finding, or ``None`` when allowed.
        """

        origin = normalize_country(origin_country)
        destination = normalize_country(destination_country)

        if direction is TransactionDirection.INTERNAL:
            if origin != destination:
                return self._finding(
                    ErrorCode.COUNTRY_MISMATCH,
                    f"Internal transaction must stay within one country (origin {origin or '-'}, "
                    f"destination {destination or '-'})",
                    origin,
                    destination,
                )
            return None

        if origin is None:
            return self._finding(
                ErrorCode.MISSING_ORIGIN_COUNTRY,
                f"{direction.value} transaction requires an origin country",
                origin,
                destination,
            )
        if destination is None:
            return self._finding(
                ErrorCode.MISSING_DESTINATION_COUNTRY,
                f"{direction.value} transaction requires a destination country",
                origin,
                destination,
            )
        if not self.corridors.is_permitted(origin, destination, holder_category):
            return self._finding(
                ErrorCode.CORRIDOR_NOT_PERMITTED,
                f"Trade corridor {origin} -> {destination} is not permitted",
                origin,
                destination,
            )
        return None

    @staticmethod
    def _finding(
        code: ErrorCode, message: str, origin: Optional[str], destination: Optional[str]
    ) -> CrossBorderFinding:
        log.info("Cross-border check failed with %s: %s", code.value, message)
        return CrossBorderFinding(
            error_code=code,
            message=message,
            origin_country=origin,
            destination_country=destination,
        )


__all__ = ["CrossBorderFinding", "CrossBorderPolicy", "normalize_country"]
