"""Entry point for `python -m marketplace_core` and the `marketplace-core` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import asdict
from pathlib import Path

from marketplace_core.errors import StoreError
from marketplace_core.paths import Family
from marketplace_core.services import Services, build_services
from marketplace_core.settings import load_settings

INDEX_FAMILIES = [family.value for family in Family]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Maintain the marketplace document store and ledger")
    parser.add_argument("--data-root", type=Path, default=None, help="Override MARKETPLACE_DATA_ROOT")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    migrate = commands.add_parser("migrate", help="Legacy layout migration")
    migrate.add_argument("action", choices=["analyze", "run", "validate"])
    migrate.add_argument("--dry-run", action="store_true", help="With 'run', report without writing")

    index = commands.add_parser("index", help="Index maintenance")
    index.add_argument("action", choices=["rebuild"])
    index.add_argument("family", choices=INDEX_FAMILIES)

    invoice = commands.add_parser("invoice", help="Invoice operations")
    invoice_actions = invoice.add_subparsers(dest="action", required=True)
    generate = invoice_actions.add_parser("generate", help="Bill approved, unbilled tasks of a project")
    generate.add_argument("project_id")
    generate.add_argument("--draft", action="store_true", help="Leave the invoice as a draft")
    generate.add_argument("--upfront", action="store_true", help="Invoice the upfront commitment instead")
    pay = invoice_actions.add_parser("pay", help="Mark a sent invoice paid")
    pay.add_argument("invoice_number")

    ledger = commands.add_parser("ledger", help="Ledger consistency")
    ledger.add_argument("action", choices=["check"])
    return parser.parse_args(argv)


def _print(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


def run_command(args: argparse.Namespace, services: Services) -> int:
    if args.command == "migrate":
        migration = services.migration
        if args.action == "analyze":
            report = migration.analyze()
        elif args.action == "run":
            report = migration.migrate(dry_run=args.dry_run)
        else:
            report = migration.validate()
        print(report.render())
        return 0 if report.ok else 1

    if args.command == "index":
        family = Family(args.family)
        if family is Family.NOTIFICATIONS:
            count = services.events.rebuild_fingerprint_index()
        else:
            count = services.storage.collection(family).rebuild_index()
        print(f"{family.value}: {count} entries")
        return 0

    if args.command == "invoice":
        reconciliation = services.reconciliation
        if args.action == "generate":
            if args.upfront:
                invoice = reconciliation.generate_upfront_invoice(args.project_id, auto_send=not args.draft)
            else:
                invoice = reconciliation.generate_invoice_with_retry(args.project_id, auto_send=not args.draft)
            _print(invoice.to_document())
        else:
            _print(asdict(reconciliation.mark_paid(args.invoice_number)))
        return 0

    report = services.reconciliation.reconcile_ledger()
    print(report.render())
    return 0 if report.ok else 1


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = load_settings(Path.cwd())
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 2
    data_root = args.data_root if args.data_root is not None else settings.data_path(Path.cwd())
    services = build_services(settings, data_root)

    try:
        return run_command(args, services)
    except StoreError as exc:
        logging.error("%s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
