"""CLI entry point for Offer Sentinel.

Usage:
    # Start the API server
    python -m offer_sentinel serve
    OFFERS_DEV_MODE=true python -m offer_sentinel serve

    # Consolidate supplier lists into the catalog
    python -m offer_sentinel ingest prices_a.xlsx prices_b.csv

    # Load supplier lists, then allocate a request list against them
    python -m offer_sentinel allocate prices_a.xlsx prices_b.xlsx --requests wanted.xlsx
    python -m offer_sentinel allocate prices_a.xlsx --requests wanted.csv --json

    # Write the request list template
    python -m offer_sentinel template template.xlsx

Without OFFERS_SUPABASE_URL / OFFERS_SUPABASE_SERVICE_KEY the catalog
lives in memory for the duration of the command.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path


def _read_bytes(path_str: str) -> bytes:
    path = Path(path_str)
    if not path.exists():
        print(f"Error: Path not found: {path}", file=sys.stderr)
        sys.exit(1)
    return path.read_bytes()


def _print_report(filename: str, report) -> None:
    status = "OK" if report.success else "FAILED"
    print(f"[{status}] {filename}")
    print(f"  {report.message}")
    if report.errors:
        print(f"--- Errors ({report.failed}) ---")
        for err in report.errors:
            print(f"  ! {err}")
    print()


def _ingest_all(store, files: list[str], settings) -> bool:
    from .consolidator import ingest_file

    ok = True
    for filename in files:
        report = ingest_file(store, _read_bytes(filename), filename, settings)
        _print_report(filename, report)
        ok = ok and report.success
    return ok


def _cmd_serve(args: argparse.Namespace) -> None:
    """Start the API server."""
    import uvicorn

    from .api import create_app
    from .config import get_settings

    settings = get_settings()
    app = create_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level="info",
    )


def _cmd_ingest(args: argparse.Namespace) -> None:
    """Consolidate one or more supplier lists."""
    from .catalog_store import create_catalog_store
    from .config import get_settings

    settings = get_settings()
    store = create_catalog_store(settings.supabase_url, settings.supabase_service_key)
    if not _ingest_all(store, args.files, settings):
        sys.exit(1)
    print(f"Catalog now holds {store.count_offers():,} offers")


def _cmd_allocate(args: argparse.Namespace) -> None:
    """Load catalogs, then print least-cost plans for a request list."""
    from .allocator import FulfillmentAllocator
    from .catalog_store import create_catalog_store
    from .config import get_settings
    from .errors import SpreadsheetError
    from .spreadsheet import read_allocation_requests

    settings = get_settings()
    store = create_catalog_store(settings.supabase_url, settings.supabase_service_key)
    if args.catalogs and not _ingest_all(store, args.catalogs, settings):
        sys.exit(1)

    try:
        requests = read_allocation_requests(_read_bytes(args.requests), args.requests)
    except SpreadsheetError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    plans = FulfillmentAllocator.from_settings(store, settings).allocate(requests)

    if args.json:
        print(json.dumps([p.model_dump() for p in plans], indent=2, ensure_ascii=False))
        return

    for plan in plans:
        flag = "MANUAL" if plan.requires_manual_processing else "OK"
        cost = f"{plan.total_cost:,.2f}" if plan.total_cost is not None else "-"
        print(
            f"  [{flag:>6}] {plan.product_id or '<missing>':<14} "
            f"x{plan.requested_quantity if plan.requested_quantity is not None else '?':<5} "
            f"{cost:>12}  {plan.message}"
        )
    manual = sum(1 for p in plans if p.requires_manual_processing)
    print()
    print(f"{len(plans)} requests, {manual} need manual processing")


def _cmd_template(args: argparse.Namespace) -> None:
    """Write the request list template."""
    from .exports import request_template

    path = Path(args.output)
    path.write_bytes(request_template())
    print(f"Wrote template to {path}")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="offer_sentinel",
        description="Offer Sentinel — supplier offer consolidation and least-cost fulfillment",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )
    sub = parser.add_subparsers(dest="command")

    # serve
    sub.add_parser("serve", help="Start the API server")

    # ingest
    ingest_p = sub.add_parser("ingest", help="Consolidate supplier lists")
    ingest_p.add_argument("files", nargs="+", help="Supplier list files (.xlsx/.xls/.csv)")

    # allocate
    alloc_p = sub.add_parser("allocate", help="Least-cost plans for a request list")
    alloc_p.add_argument(
        "catalogs", nargs="*", help="Supplier lists to load before allocating"
    )
    alloc_p.add_argument(
        "--requests", "-r", required=True, help="Request list (barcode, quantity)"
    )
    alloc_p.add_argument(
        "--json", action="store_true", help="Print plans as JSON"
    )

    # template
    template_p = sub.add_parser("template", help="Write the request list template")
    template_p.add_argument("output", help="Output .xlsx path")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "serve": _cmd_serve,
        "ingest": _cmd_ingest,
        "allocate": _cmd_allocate,
        "template": _cmd_template,
    }

    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(1)
    handler(args)


if __name__ == "__main__":
    main()
