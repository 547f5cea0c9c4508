"""Command-line entry points for the compliance toolkit.

All orchestration in this module is limited to argparse wiring, reading JSON
requests and printing JSON results. Business decisions live in
:mod:`trade_compliance.core_logic` and below.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, TextIO

from . import core_logic, log, set_console_level
from .constants import format_activities
from .errors import ComplianceError
from .models import Actor, Transaction


EXIT_OK = 0
EXIT_GENERAL_ERROR = 1
EXIT_COMPLIANCE_FAILURE = 2
EXIT_FILE_NOT_FOUND = 3


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="compliance-cli",
        description="Validate controlled-substance transactions against licences and thresholds.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Echo informational log messages to stderr.",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare commands that record validations or override decisions."""
    specs = {
        "validate": register_validate_command(),
        "approve": register_approve_command(),
        "reject": register_reject_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only commands."""
    specs = {
        "pending": register_pending_command(),
        "lookup-licence": register_lookup_licence_command(),
        "ledger": register_ledger_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_validate_command() -> CommandSpec:
    """Register the parser and executor for ``validate``."""
    name = "validate"
    help_text = "Validate a transaction read as JSON from --file or stdin."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--file", type=Path, default=None, help="Request JSON file (defaults to stdin).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_validate, mutates=True)


def _add_actor_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--transaction-id", required=True)
    parser.add_argument("--actor", required=True, help="Identifier of the deciding user.")
    parser.add_argument(
        "--role",
        dest="roles",
        action="append",
        default=None,
        help="Role held by the actor; repeat for several roles.",
    )


def register_approve_command() -> CommandSpec:
    """Register the parser and executor for ``approve``."""
    name = "approve"
    help_text = "Approve an override for a transaction awaiting one."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_actor_arguments(parser)
        parser.add_argument("--justification", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_approve, mutates=True)


def register_reject_command() -> CommandSpec:
    """Register the parser and executor for ``reject``."""
    name = "reject"
    help_text = "Reject an override for a transaction awaiting one."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_actor_arguments(parser)
        parser.add_argument("--reason", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reject, mutates=True)


def register_pending_command() -> CommandSpec:
    """Register the parser and executor for ``pending``."""
    name = "pending"
    help_text = "List transactions awaiting an override decision."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pending)


def register_lookup_licence_command() -> CommandSpec:
    """Register the parser and executor for ``lookup-licence``."""
    name = "lookup-licence"
    help_text = "Show a licence and the substances it covers."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--licence-number", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_lookup_licence)


def register_ledger_command() -> CommandSpec:
    """Register the parser and executor for ``ledger``."""
    name = "ledger"
    help_text = "Show committed threshold and licence-cap totals."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", default=None, help="Only show buckets of this customer.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_ledger)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def emit_json(payload: Any, stream: Optional[TextIO] = None) -> None:
    """Write ``payload`` as indented JSON to ``stream`` (stdout by default)."""
    print(json.dumps(payload, indent=2, default=str), file=stream or sys.stdout)


def read_request(args: argparse.Namespace, stdin: Optional[TextIO] = None) -> Mapping[str, Any]:
    """Read and parse the JSON request for ``validate``.

    Raises:
        FileNotFoundError: If ``--file`` names a missing file.
        ValueError: If no input was provided or it is not valid JSON.
    """
    source: Optional[Path] = getattr(args, "file", None)
    if source is not None:
        if not source.exists():
            raise FileNotFoundError(f"Input file not found: {source}")
        raw = source.read_text(encoding="utf-8")
    else:
        raw = (stdin or sys.stdin).read()

    if not raw.strip():
        raise ValueError("No input provided. Pass transaction JSON via stdin or --file.")
    return json.loads(raw)


def translate_actor(args: argparse.Namespace) -> Actor:
    """Translate CLI args into the acting user."""
    return Actor(actor_id=args.actor, roles=frozenset(args.roles or ()))


def summarize_transaction(transaction: Transaction) -> Dict[str, Any]:
    return {
        "transactionId": transaction.transaction_id,
        "externalId": transaction.external_reference,
        "customerAccount": transaction.customer_account,
        "status": transaction.validation_status.value,
        "validatedAt": transaction.validated_at.isoformat() if transaction.validated_at else None,
        "violations": [
            {
                "code": violation.error_code,
                "severity": violation.severity.value,
                "canOverride": violation.can_override,
                "message": violation.message,
            }
            for violation in transaction.violations
        ],
    }


def run_validate(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Validate one transaction and print the result."""
    request = read_request(args)
    transaction = core_logic.decode_transaction(request)
    result = core_logic.validate_transaction(context, transaction)
    emit_json(core_logic.encode_result(result))
    return EXIT_OK if result.is_valid else EXIT_COMPLIANCE_FAILURE


def run_approve(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Approve an override via the BLL."""
    result = core_logic.approve_override(context, args.transaction_id, translate_actor(args), args.justification)
    emit_json(core_logic.encode_override_result(result))
    return EXIT_OK


def run_reject(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Reject an override via the BLL."""
    result = core_logic.reject_override(context, args.transaction_id, translate_actor(args), args.reason)
    emit_json(core_logic.encode_override_result(result))
    return EXIT_OK


def run_pending(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    emit_json([summarize_transaction(item) for item in core_logic.list_pending_overrides(context)])
    return EXIT_OK


def run_lookup_licence(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    found = core_logic.lookup_licence(context, args.licence_number)
    if found is None:
        emit_json({"error": f"Licence not found: {args.licence_number}"})
        return EXIT_COMPLIANCE_FAILURE

    licence, mappings = found
    emit_json(
        {
            "licenceId": licence.licence_id,
            "licenceNumber": licence.licence_number,
            "holderType": licence.holder_type.value,
            "holderId": licence.holder_id,
            "issuingAuthority": licence.issuing_authority,
            "issueDate": licence.issue_date.isoformat(),
            "expiryDate": licence.expiry_date.isoformat() if licence.expiry_date else None,
            "status": licence.status.value,
            "permittedActivities": format_activities(licence.permitted_activities),
            "substances": [
                {
                    "substanceCode": mapping.substance_code,
                    "effectiveDate": mapping.effective_date.isoformat(),
                    "expiryDate": mapping.expiry_date.isoformat() if mapping.expiry_date else None,
                    "maxQuantityPerTransaction": mapping.max_quantity_per_transaction,
                    "maxQuantityPerPeriod": mapping.max_quantity_per_period,
                    "periodType": mapping.period_type.value if mapping.period_type else None,
                }
                for mapping in mappings
            ],
        }
    )
    return EXIT_OK


def run_ledger(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    totals = core_logic.ledger_totals(context)
    rows = [
        {
            "limitId": key.limit_id,
            "customerId": key.customer_id,
            "periodType": key.period_type.value,
            "bucket": key.bucket,
            "total": str(total),
        }
        for key, total in sorted(totals.items(), key=lambda item: item[0].sort_key())
        if args.customer_id is None or key.customer_id == args.customer_id
    ]
    emit_json(rows)
    return EXIT_OK


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, ComplianceError):
        log.error("%s: %s", error.error_code.value, error)
        return EXIT_COMPLIANCE_FAILURE
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return EXIT_FILE_NOT_FOUND
    log.error("%s", error)
    return EXIT_GENERAL_ERROR


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    if getattr(args, "verbose", False):
        set_console_level(logging.INFO)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        # A failed validation is still a recorded outcome.
        if command_table[args.command].mutates and exit_code in (EXIT_OK, EXIT_COMPLIANCE_FAILURE):
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


__all__ = ["CommandSpec", "build_parser", "configure_subcommands", "main"]
