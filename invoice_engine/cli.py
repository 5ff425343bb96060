#!/usr/bin/env python3
"""
Invoice engine command line.

Usage:
    invoice-engine parse invoice.txt
    cat invoice.txt | invoice-engine parse -
    invoice-engine process ./invoices/midjourney.pdf
    invoice-engine predict "Midjourney Inc" --amount 10
    invoice-engine learn "Midjourney Inc" 5020 --amount 10 --corrected
    invoice-engine bootstrap
    invoice-engine stats --limit 10
"""

import argparse
import json
import sys

from pydantic import BaseModel

from . import get_default_engine
from .core.config import settings
from .core.logging import setup_logging
from .services.categorization import CategoryPredictor
from .services.field_extractor import parse_invoice_data
from .services.pipeline import InvoicePipeline
from .services.storage import SQLiteInvoiceStore
from .services.validation import validate_invoice_data


def _print_json(payload):
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    elif isinstance(payload, list):
        payload = [p.model_dump(mode="json") if isinstance(p, BaseModel) else p for p in payload]
    print(json.dumps(payload, indent=2))


def _read_text(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    with open(source, encoding="utf-8") as f:
        return f.read()


def cmd_parse(args) -> int:
    parsed = parse_invoice_data(_read_text(args.source))
    validation = validate_invoice_data(parsed)
    _print_json({
        "parsed": parsed.model_dump(mode="json"),
        "validation": validation.model_dump(mode="json"),
    })
    return 0


def cmd_process(args) -> int:
    pipeline = InvoicePipeline(
        engine=get_default_engine(),
        invoice_store=SQLiteInvoiceStore(settings.invoice_db_path),
    )
    _print_json(pipeline.process_file(args.file))
    return 0


def cmd_predict(args) -> int:
    prediction = CategoryPredictor(get_default_engine()).predict(args.vendor, args.amount)
    _print_json(prediction)
    return 0


def cmd_learn(args) -> int:
    stored = get_default_engine().update_mapping(args.vendor, args.category, args.amount, args.corrected)
    _print_json({"vendor": args.vendor, "category": args.category, "stored": stored})
    return 0 if stored else 1


def cmd_bootstrap(args) -> int:
    store = SQLiteInvoiceStore(settings.invoice_db_path)
    _print_json(get_default_engine().bootstrap(store.list_all()))
    return 0


def cmd_stats(args) -> int:
    _print_json(get_default_engine().vendor_statistics(args.limit))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="invoice-engine",
        description="Parse, validate and categorize invoices",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p = subparsers.add_parser("parse", help="Parse invoice text and print fields + validation")
    p.add_argument("source", help="Text file, or - for stdin")
    p.set_defaults(func=cmd_parse)

    p = subparsers.add_parser("process", help="Run the full pipeline on a PDF or image")
    p.add_argument("file", help="Invoice document")
    p.set_defaults(func=cmd_process)

    p = subparsers.add_parser("predict", help="Predict the category for a vendor")
    p.add_argument("vendor")
    p.add_argument("--amount", type=float, default=None)
    p.set_defaults(func=cmd_predict)

    p = subparsers.add_parser("learn", help="Record a confirmed category for a vendor")
    p.add_argument("vendor")
    p.add_argument("category")
    p.add_argument("--amount", type=float, default=0.0)
    p.add_argument("--corrected", action="store_true", help="Category was chosen by a person")
    p.set_defaults(func=cmd_learn)

    p = subparsers.add_parser("bootstrap", help="Learn from every categorized invoice in the invoice store")
    p.set_defaults(func=cmd_bootstrap)

    p = subparsers.add_parser("stats", help="Top vendors by learned transactions")
    p.add_argument("--limit", type=int, default=10)
    p.set_defaults(func=cmd_stats)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level=args.log_level)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
