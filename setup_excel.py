"""Utility for initializing the compliance master workbook.

The module doubles as a script (``python setup_excel.py``) and as a library
used by tests or other tooling. A fresh workbook carries every sheet with its
header row; master data can be seeded from a JSON file that maps sheet names
to lists of ``{column: value}`` rows.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font

from trade_compliance import data_manager
from trade_compliance.data_manager import CONFIG_FILE_NAME, SHEET_COLUMNS, ConfigSettings

SeedRows = Mapping[str, Sequence[Mapping[str, Any]]]


def load_settings(config_path: Path) -> ConfigSettings:
    """Read ``config.ini`` with the same rules as the runtime.

    Relative ``DataFile`` entries resolve against the config file's directory.
    """

    config_path = Path(config_path).expanduser().resolve()
    parser = data_manager.read_config(config_path)
    return data_manager.parse_settings(parser, base_path=config_path.parent)


def load_seed_file(seed_path: Path) -> SeedRows:
    """Load seed rows from JSON.

    Raises:
        FileNotFoundError: If ``seed_path`` does not exist.
        ValueError: If the document is not an object of row lists.
    """

    seed_path = Path(seed_path).expanduser().resolve()
    if not seed_path.exists():
        raise FileNotFoundError(f"Seed file not found: {seed_path}")

    document = json.loads(seed_path.read_text(encoding="utf-8"))
    if not isinstance(document, dict) or not all(isinstance(rows, list) for rows in document.values()):
        raise ValueError("Seed file must map sheet names to lists of rows")
    return document


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    seed_rows: Optional[SeedRows] = None,
    overwrite: bool = False,
) -> Path:
    """Create the compliance master workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.

    Raises:
        FileExistsError: If the workbook exists and ``overwrite`` is false.
        KeyError: If ``seed_rows`` names an unknown sheet or column.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing master workbook: {destination}")

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)
    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    for sheet_name, rows in (seed_rows or {}).items():
        if sheet_name not in workbook.sheetnames:
            raise KeyError(f"Unknown sheet in seed data: {sheet_name}")
        for row in rows:
            data_manager.append_record(workbook, sheet_name, row)

    workbook.save(destination)
    return destination


def run_from_config(
    config_path: Path, *, seed_path: Optional[Path] = None, overwrite: bool = False
) -> Path:
    """Create the workbook named by ``config.ini``, optionally seeded."""

    settings = load_settings(config_path)
    seed_rows = load_seed_file(seed_path) if seed_path is not None else None
    return create_master_workbook(settings.data_file, seed_rows=seed_rows, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialize the compliance master workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE_NAME,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument("--seed", default=None, help="Optional JSON file with master data rows.")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()
    seed_path = Path(args.seed) if args.seed else None

    print("--- Compliance Workbook Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, seed_path=seed_path, overwrite=args.force)
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
