"""
Audit-Discrepancy Pre-Filter — Parsing, Column Mapping & Snapshot Loading
"""

import io
import re
import math
import sqlite3
import zipfile
import logging
from typing import Optional
from dataclasses import dataclass

import numpy as np
import pandas as pd
from xlrd import XLRDError
from openpyxl.utils.exceptions import InvalidFileException

logger = logging.getLogger("auditfilter")

SCORE_MIN = 0
SCORE_MAX = 10

# plain integers, optionally with a zero fraction ("7", "7.0")
SCORE_PATTERN = re.compile(r"^\s*[+-]?\d+(\.0+)?\s*$")

# what openpyxl / xlrd / pandas raise for a damaged or mislabelled workbook
EXCEL_ERRORS = (zipfile.BadZipFile, XLRDError, InvalidFileException, KeyError, ValueError)


# ── Errors ──────────────────────────────────────────────────
class ValidationError(ValueError):
    """A row violates the source data model."""


class InvalidScoreValue(ValidationError):
    """Score is not an integer or lies outside SCORE_MIN..SCORE_MAX."""


class SnapshotError(ValueError):
    """A required relation is missing, empty or lacks a required column."""


# ── Column normalisation ────────────────────────────────────
RELATION_COLUMNS = {
    "audits": {
        "location_id":  ["location_id", "location", "loc_id"],
        "source_type":  ["source_type", "type_of_water_source", "declared_source_type"],
        "true_score":   ["true_score", "true_water_source_score", "auditor_score", "audit_score"],
        "statement":    ["statement", "statements", "auditor_statement", "notes"],
    },
    "visits": {
        "record_id":      ["record_id", "record", "visit_id"],
        "location_id":    ["location_id", "location", "loc_id"],
        "source_id":      ["source_id", "source"],
        "employee_id":    ["employee_id", "assigned_employee_id", "surveyor_id"],
        "visit_sequence": ["visit_sequence", "visit_count", "visit_number", "sequence"],
    },
    "observations": {
        "record_id":      ["record_id", "record", "visit_id"],
        "observed_score": ["observed_score", "subjective_quality_score", "surveyor_score", "quality_score"],
    },
    "employees": {
        "employee_id":   ["employee_id", "assigned_employee_id", "surveyor_id"],
        "employee_name": ["employee_name", "name", "full_name"],
        "contact":       ["contact", "email", "phone_number", "phone"],
    },
    "sources": {
        "source_id":   ["source_id", "source"],
        "source_type": ["source_type", "type_of_water_source"],
    },
}

REQUIRED_COLUMNS = {
    "audits":       ["location_id", "true_score", "statement"],
    "visits":       ["record_id", "location_id", "employee_id", "visit_sequence"],
    "observations": ["record_id", "observed_score"],
    "employees":    ["employee_id", "employee_name"],
    "sources":      ["source_id", "source_type"],
}

REQUIRED_RELATIONS = ["audits", "visits", "observations", "employees"]

# Sheet / table names used by the original database export
RELATION_ALIASES = {
    "audits":       ["audits", "auditor_report", "audit", "audit_report"],
    "visits":       ["visits", "visit"],
    "observations": ["observations", "water_quality", "quality", "quality_observations"],
    "employees":    ["employees", "employee", "employee_directory"],
    "sources":      ["sources", "water_source", "water_sources"],
}


def _norm(name: str) -> str:
    """Normalise a column name for fuzzy matching."""
    s = str(name).lower().strip()
    s = re.sub(r"[^a-z0-9]", "_", s)
    s = re.sub(r"_+", "_", s).strip("_")
    return s


def map_columns(df: pd.DataFrame, relation: str) -> pd.DataFrame:
    """Rename columns of one relation to canonical names."""
    aliases_by_canon = RELATION_COLUMNS[relation]
    normed = {_norm(c): c for c in df.columns}
    rename = {}
    for canon, aliases in aliases_by_canon.items():
        for alias in aliases:
            if alias in normed:
                rename[normed[alias]] = canon
                break
        else:
            for alias in aliases:
                for n, orig in normed.items():
                    if alias in n and orig not in rename:
                        rename[orig] = canon
                        break
                if canon in rename.values():
                    break
    return df.rename(columns=rename)


def relation_for(name: str) -> Optional[str]:
    """Map a sheet, table or file stem to a relation key."""
    n = _norm(name)
    for relation, aliases in RELATION_ALIASES.items():
        if n in aliases:
            return relation
    return None


# ── Value parsing ───────────────────────────────────────────
def _is_blank(val) -> bool:
    if val is None:
        return True
    if isinstance(val, str):
        return not val.strip() or val.strip().lower() in {"null", "none", "nan", "na", "n/a"}
    return bool(pd.isna(val))


def parse_score(val) -> Optional[int]:
    """Parse a quality score.

    Blank values are unknown (None), never zero. Integral values like
    "7" or "7.0" become int. Anything else ("1e1", "0x7", "7.5") raises
    InvalidScoreValue, nothing is coerced.
    """
    if _is_blank(val):
        return None
    if isinstance(val, (bool, np.bool_)):
        raise InvalidScoreValue(f"Score is not an integer: {val!r}")
    if isinstance(val, str):
        if not SCORE_PATTERN.match(val):
            raise InvalidScoreValue(f"Score is not an integer: {val!r}")
        num = float(val.strip())
    elif isinstance(val, (int, float, np.integer, np.floating)):
        num = float(val)
    else:
        raise InvalidScoreValue(f"Score is not an integer: {val!r}")
    if math.isnan(num) or not num.is_integer():
        raise InvalidScoreValue(f"Score is not an integer: {val!r}")
    score = int(num)
    if not SCORE_MIN <= score <= SCORE_MAX:
        raise InvalidScoreValue(
            f"Score {score} outside {SCORE_MIN}..{SCORE_MAX}"
        )
    return score


def parse_sequence(val) -> int:
    """Parse a visit sequence number (>= 1)."""
    try:
        num = float(str(val).strip())
    except ValueError:
        raise ValidationError(f"Visit sequence is not a number: {val!r}") from None
    if math.isnan(num) or not num.is_integer() or num < 1:
        raise ValidationError(f"Visit sequence must be an integer >= 1: {val!r}")
    return int(num)


def _clean_id(val) -> str:
    if _is_blank(val):
        return ""
    s = str(val).strip()
    # spreadsheet exports turn numeric ids into "123.0"
    if re.fullmatch(r"\d+\.0", s):
        s = s[:-2]
    return s


# ── Snapshot ────────────────────────────────────────────────
@dataclass(frozen=True)
class Snapshot:
    """All source relations, read together before the pipeline runs."""
    audits: pd.DataFrame
    visits: pd.DataFrame
    observations: pd.DataFrame
    employees: pd.DataFrame
    sources: Optional[pd.DataFrame] = None


def _with_row_context(relation: str, row_no: int, fn, val):
    try:
        return fn(val)
    except ValidationError as e:
        raise type(e)(f"{relation} row {row_no}: {e}") from None


def _prepare(df: pd.DataFrame, relation: str) -> pd.DataFrame:
    df = map_columns(df, relation)
    missing = [c for c in REQUIRED_COLUMNS[relation] if c not in df.columns]
    if missing:
        raise SnapshotError(f"{relation}: missing column(s) {', '.join(missing)}")
    for col in RELATION_COLUMNS[relation]:
        if col not in df.columns:
            df[col] = ""
    df = df[list(RELATION_COLUMNS[relation])].copy()

    for col in df.columns:
        if col.endswith("_id"):
            df[col] = df[col].apply(_clean_id)
    for col in ("true_score", "observed_score"):
        if col in df.columns:
            parsed = [
                _with_row_context(relation, i + 1, parse_score, v)
                for i, v in enumerate(df[col].tolist())
            ]
            df[col] = pd.array(parsed, dtype="Int64")
    if "visit_sequence" in df.columns:
        df["visit_sequence"] = [
            _with_row_context(relation, i + 1, parse_sequence, v)
            for i, v in enumerate(df["visit_sequence"].tolist())
        ]
    for col in ("statement", "source_type", "employee_name", "contact"):
        if col in df.columns:
            df[col] = df[col].apply(lambda v: None if _is_blank(v) else str(v).strip())
    return df.reset_index(drop=True)


def _check_unique(df: pd.DataFrame, key: str, relation: str):
    dup = df.loc[df[key].duplicated(keep=False), key]
    if not dup.empty:
        sample = ", ".join(sorted(set(dup))[:5])
        raise ValidationError(f"{relation}: duplicate {key} ({sample})")


def build_snapshot(frames: dict) -> Snapshot:
    """Normalise and validate raw relation frames into a Snapshot."""
    for relation in REQUIRED_RELATIONS:
        df = frames.get(relation)
        if df is None or df.empty:
            raise SnapshotError(f"Relation '{relation}' is missing or empty")

    prepared = {r: _prepare(frames[r], r) for r in REQUIRED_RELATIONS}
    sources = frames.get("sources")
    if sources is not None and not sources.empty:
        prepared["sources"] = _prepare(sources, "sources")
        _check_unique(prepared["sources"], "source_id", "sources")
    else:
        prepared["sources"] = None

    _check_unique(prepared["audits"], "location_id", "audits")
    _check_unique(prepared["observations"], "record_id", "observations")
    _check_unique(prepared["employees"], "employee_id", "employees")
    _check_unique(prepared["visits"], "record_id", "visits")
    first = prepared["visits"].loc[prepared["visits"]["visit_sequence"] == 1]
    _check_unique(first, "location_id", "visits (first visit)")

    extra = f", {len(prepared['sources'])} sources" if prepared["sources"] is not None else ""
    logger.info(f"Snapshot: {len(prepared['audits'])} audits, {len(prepared['visits'])} visits, "
                f"{len(prepared['observations'])} observations, "
                f"{len(prepared['employees'])} employees{extra}")
    return Snapshot(**prepared)


# ── File ingestion ──────────────────────────────────────────
def read_upload(filepath: str, min_columns: int = 2) -> pd.DataFrame:
    """Read CSV / XLS / XLSX with auto-detection."""
    name = filepath.lower()
    if name.endswith((".xlsx", ".xls")):
        engine = "xlrd" if name.endswith(".xls") else "openpyxl"
        try:
            return pd.read_excel(filepath, engine=engine, dtype=str)
        except EXCEL_ERRORS as e:
            raise SnapshotError(f"Could not read workbook {filepath}: {e}") from e
    # CSV — auto-detect separator
    with open(filepath, "r", encoding="utf-8-sig", errors="replace") as f:
        text = f.read()
    for sep in [";", ",", "\t"]:
        try:
            df = pd.read_csv(io.StringIO(text), sep=sep, dtype=str, keep_default_na=False)
            if len(df.columns) >= min_columns:
                return df
        except Exception:
            continue
    raise ValueError(f"Could not parse CSV {filepath}: at least {min_columns} columns expected.")


def load_snapshot_files(paths: dict) -> Snapshot:
    """One file per relation: {"audits": path, "visits": path, ...}."""
    frames = {}
    for relation, path in paths.items():
        if relation not in RELATION_COLUMNS:
            raise ValueError(f"Unknown relation: {relation}")
        if path:
            frames[relation] = read_upload(str(path))
    return build_snapshot(frames)


def load_snapshot_workbook(filepath: str) -> Snapshot:
    """One workbook export with one sheet per relation."""
    engine = "xlrd" if filepath.lower().endswith(".xls") else "openpyxl"
    try:
        sheets = pd.read_excel(filepath, sheet_name=None, engine=engine, dtype=str)
    except EXCEL_ERRORS as e:
        raise SnapshotError(f"Could not read workbook {filepath}: {e}") from e
    frames = {}
    for sheet, df in sheets.items():
        relation = relation_for(sheet)
        if relation is None:
            logger.info(f"Workbook: ignoring sheet '{sheet}'")
            continue
        frames[relation] = df
    return build_snapshot(frames)


def load_snapshot_sqlite(db_path: str, tables: Optional[dict] = None) -> Snapshot:
    """Read every relation inside one read transaction.

    `tables` maps relation keys to table names; by default the first
    existing alias from RELATION_ALIASES is used.
    """
    conn = sqlite3.connect(db_path, isolation_level=None)
    try:
        conn.execute("BEGIN")
        existing = {
            row[0] for row in
            conn.execute("SELECT name FROM sqlite_master WHERE type IN ('table', 'view')")
        }
        frames = {}
        for relation, aliases in RELATION_ALIASES.items():
            table = (tables or {}).get(relation)
            if table is None:
                table = next((a for a in aliases if a in existing), None)
            if table is None:
                continue
            frames[relation] = pd.read_sql_query(
                f'SELECT * FROM "{table}"', conn
            )
        conn.execute("COMMIT")
    except (sqlite3.Error, pd.errors.DatabaseError) as e:
        raise SnapshotError(f"Could not read snapshot from {db_path}: {e}") from e
    finally:
        conn.close()
    return build_snapshot(frames)
