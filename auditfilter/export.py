"""
Audit-Discrepancy Pre-Filter — Report Export

Every run replaces the report files completely; nothing is appended.
"""

import os
import json
import logging
import tempfile

import pandas as pd

from auditfilter.engine import DISCREPANCY_COLUMNS, ERROR_COUNT_COLUMNS, EVIDENCE_COLUMNS

logger = logging.getLogger("auditfilter")

REPORTS = {
    "discrepancies":    DISCREPANCY_COLUMNS,
    "error_counts":     ERROR_COUNT_COLUMNS,
    "suspects":         ERROR_COUNT_COLUMNS,
    "suspect_evidence": EVIDENCE_COLUMNS,
    "control_evidence": EVIDENCE_COLUMNS,
}


def result_frames(result: dict) -> dict:
    """Report lists of an engine result as DataFrames (fixed column order)."""
    return {
        name: pd.DataFrame(result.get(name, []), columns=cols)
        for name, cols in REPORTS.items()
    }


def report_summary(result: dict) -> dict:
    """The summary part of a result: message, statistics, unsurveyed locations."""
    return {
        "message": result.get("message", ""),
        "statistics": result.get("statistics", {}),
        "missing_locations": result.get("missing_locations", []),
    }


def report_payload(result: dict) -> dict:
    """Summary plus every report list, without the engine log lines."""
    payload = report_summary(result)
    payload.update({name: result.get(name, []) for name in REPORTS})
    return payload


def _replace(path: str, write):
    """Write to a temp file in the same directory, then rename over `path`."""
    folder = os.path.dirname(path) or "."
    fd, tmp = tempfile.mkstemp(dir=folder, prefix=".tmp-", suffix=os.path.splitext(path)[1])
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            write(f)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise


def write_reports(result: dict, out_dir: str) -> dict:
    """Write all report relations plus summary.json; returns {name: path}."""
    os.makedirs(out_dir, exist_ok=True)
    written = {}
    for name, df in result_frames(result).items():
        path = os.path.join(out_dir, f"{name}.csv")
        _replace(path, lambda f, df=df: df.to_csv(f, index=False))
        written[name] = path

    summary = report_summary(result)
    path = os.path.join(out_dir, "summary.json")
    _replace(path, lambda f: json.dump(summary, f, indent=2, ensure_ascii=False))
    written["summary"] = path

    logger.info(f"Reports written to {out_dir}: {', '.join(sorted(written))}")
    return written
