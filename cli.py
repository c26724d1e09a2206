#!/usr/bin/env python3
"""
Audit-Discrepancy Pre-Filter CLI

Usage:
    python cli.py run --audits A.csv --visits V.csv --quality Q.csv --employees E.csv
    python cli.py run --workbook export.xlsx [--keyword cash] [--out reports/]
    python cli.py run --sqlite md_water_services.db [--match-mode word_boundary] [--json]
"""

import os
import sys
import json
import logging
import argparse

from auditfilter.parser import (
    load_snapshot_files, load_snapshot_workbook, load_snapshot_sqlite,
)
from auditfilter.engine import (
    DiscrepancyEngine, DEFAULT_KEYWORD, DEFAULT_MATCH_MODE, DEFAULT_METRIC,
    MATCH_MODES, METRICS,
)
from auditfilter.export import write_reports
from auditfilter.webhook import push_report, DEFAULT_RETRIES, DEFAULT_TIMEOUT

logger = logging.getLogger("auditfilter")


def load_snapshot(args):
    """Pick the snapshot source given on the command line."""
    if args.sqlite:
        return load_snapshot_sqlite(args.sqlite)
    if args.workbook:
        return load_snapshot_workbook(args.workbook)
    paths = {
        "audits": args.audits,
        "visits": args.visits,
        "observations": args.quality,
        "employees": args.employees,
        "sources": args.sources,
    }
    return load_snapshot_files(paths)


def cmd_run(args):
    """Run the pipeline once and emit all reports."""
    try:
        snapshot = load_snapshot(args)
        engine = DiscrepancyEngine(snapshot, keyword=args.keyword,
                                   match_mode=args.match_mode, metric=args.metric)
    except (ValueError, OSError) as e:
        logger.error(f"Input error: {e}")
        return 2

    result = engine.run()

    if args.out:
        write_reports(result, args.out)
    if args.webhook:
        wh = push_report(result, args.webhook, retries=args.webhook_retries,
                         timeout=args.webhook_timeout)
        if "error" in wh:
            logger.error(f"Webhook: {wh['error']}")

    if args.json:
        out = {k: v for k, v in result.items() if k != "logs"}
        print(json.dumps(out, indent=2, ensure_ascii=False))
    else:
        print(result["message"])
        for r in result["suspect_evidence"]:
            print(f"  SUSPECT  {r['employee_name']:<25} {r['location_id']:<12} {r['statement']}")
        for r in result["control_evidence"]:
            print(f"  CONTROL  {r['employee_name'] or '?':<25} {r['location_id']:<12} {r['statement']}")
    return 0


def main(argv=None):
    logging.basicConfig(level=logging.INFO, format="%(asctime)s  %(message)s")

    parser = argparse.ArgumentParser(description="Audit-Discrepancy Pre-Filter")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    run_parser = subparsers.add_parser("run", help="Run the discrepancy pipeline")
    src = run_parser.add_mutually_exclusive_group()
    src.add_argument("--workbook", help="Workbook with one sheet per relation")
    src.add_argument("--sqlite", help="SQLite database holding the relations")
    run_parser.add_argument("--audits", help="Auditor report file")
    run_parser.add_argument("--visits", help="Visits file")
    run_parser.add_argument("--quality", help="Water quality observations file")
    run_parser.add_argument("--employees", help="Employee directory file")
    run_parser.add_argument("--sources", help="Water source directory file (optional)")
    run_parser.add_argument("--keyword", default=os.environ.get("AUDIT_KEYWORD", DEFAULT_KEYWORD))
    run_parser.add_argument("--match-mode", choices=MATCH_MODES,
                            default=os.environ.get("AUDIT_MATCH_MODE", DEFAULT_MATCH_MODE))
    run_parser.add_argument("--metric", choices=list(METRICS),
                            default=os.environ.get("AUDIT_METRIC", DEFAULT_METRIC))
    run_parser.add_argument("--out", help="Directory for report files (replaced on each run)")
    run_parser.add_argument("--webhook", default=os.environ.get("REPORT_WEBHOOK_URL", ""))
    run_parser.add_argument("--webhook-retries", type=int,
                            default=int(os.environ.get("REPORT_WEBHOOK_RETRIES", DEFAULT_RETRIES)))
    run_parser.add_argument("--webhook-timeout", type=float,
                            default=float(os.environ.get("REPORT_WEBHOOK_TIMEOUT", DEFAULT_TIMEOUT)))
    run_parser.add_argument("--json", action="store_true", help="Print the full result as JSON")

    args = parser.parse_args(argv)

    commands = {
        "run": cmd_run,
    }

    if args.command in commands:
        return commands[args.command](args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
