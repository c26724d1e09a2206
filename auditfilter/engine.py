"""
Audit-Discrepancy Pre-Filter — Discrepancy Engine

Auditor scores vs. first-visit surveyor scores → mismatches per employee
→ above-mean outliers → keyword evidence (suspects vs. negative control).

Each stage is a plain function; DiscrepancyEngine only wires the return
values together, so nothing is shared between runs.
"""

import re
import logging
from fractions import Fraction

import numpy as np
import pandas as pd
from rapidfuzz import fuzz

from auditfilter.parser import Snapshot

logger = logging.getLogger("auditfilter")

# ── Config ──────────────────────────────────────────────────
DEFAULT_KEYWORD = "cash"
DEFAULT_MATCH_MODE = "case_insensitive"
DEFAULT_METRIC = "count"

MATCH_MODES = ("exact", "case_insensitive", "word_boundary", "fuzzy")
METRICS = {
    "count": "mistake_count",
    "rate":  "error_rate",
}

# partial_ratio cutoff for the fuzzy keyword mode (0-100)
FUZZY_CUTOFF = 85

DISCREPANCY_COLUMNS = [
    "location_id", "record_id", "employee_name",
    "true_score", "observed_score", "statement",
    "auditor_source_type", "surveyor_source_type",
]
ERROR_COUNT_COLUMNS = ["employee_name", "mistake_count", "surveyed_count", "error_rate"]
EVIDENCE_COLUMNS = ["employee_name", "location_id", "statement"]


# ══════════════════════════════════════════════════════════════
# STAGES
# ══════════════════════════════════════════════════════════════

def resolve_matches(snap: Snapshot) -> tuple:
    """Join each audited location to its first-visit observation.

    Locations with no first visit, or whose first visit has no quality
    observation, are not yet surveyed: they are dropped and returned as
    a sorted list of location ids.
    """
    first = snap.visits.loc[snap.visits["visit_sequence"] == 1,
                            ["record_id", "location_id", "source_id", "employee_id"]]
    resolved = (
        snap.audits.rename(columns={"source_type": "auditor_source_type"})
        .merge(first, on="location_id", how="inner")
        .merge(snap.observations, on="record_id", how="inner")
    )

    names = snap.employees[["employee_id", "employee_name"]]
    resolved = resolved.merge(names, on="employee_id", how="left")

    if snap.sources is not None:
        src = snap.sources.rename(columns={"source_type": "surveyor_source_type"})
        resolved = resolved.merge(src, on="source_id", how="left")
    else:
        resolved["surveyor_source_type"] = None

    missing = sorted(set(snap.audits["location_id"]) - set(resolved["location_id"]))
    resolved = resolved.sort_values("location_id", kind="mergesort").reset_index(drop=True)
    return resolved, missing


def extract_discrepancies(resolved: pd.DataFrame) -> pd.DataFrame:
    """Rows whose auditor and surveyor scores differ.

    A null score is unknown, not different: such rows never count as a
    mismatch, whatever the other score is.
    """
    known = resolved["true_score"].notna() & resolved["observed_score"].notna()
    differs = (resolved["true_score"] != resolved["observed_score"]).fillna(False)
    mask = (known & differs).astype(bool)
    out = resolved.loc[mask, DISCREPANCY_COLUMNS]
    return out.sort_values("location_id", kind="mergesort").reset_index(drop=True)


def count_errors(discrepancies: pd.DataFrame, resolved: pd.DataFrame) -> tuple:
    """Mistakes per employee, plus the number of unattributable mistakes.

    surveyed_count is the number of resolved first-visit comparisons the
    employee made; error_rate = mistake_count / surveyed_count.
    """
    attributed = discrepancies["employee_name"].notna()
    unattributed = int((~attributed).sum())

    counts = discrepancies.loc[attributed].groupby("employee_name").size()
    volume = resolved.loc[resolved["employee_name"].notna()].groupby("employee_name").size()

    errors = pd.DataFrame({"mistake_count": counts})
    errors["surveyed_count"] = volume.reindex(errors.index).fillna(0).astype(int)
    # every attributed discrepancy is itself a resolved row, so surveyed_count >= 1
    errors["error_rate"] = errors["mistake_count"] / errors["surveyed_count"]
    errors.index.name = "employee_name"
    errors = errors.reset_index()
    errors["mistake_count"] = errors["mistake_count"].astype(int)
    errors = errors.sort_values(
        ["mistake_count", "employee_name"], ascending=[False, True], kind="mergesort"
    ).reset_index(drop=True)
    return errors[ERROR_COUNT_COLUMNS], unattributed


def classify_outliers(errors: pd.DataFrame, metric: str = DEFAULT_METRIC) -> tuple:
    """Employees strictly above the unweighted mean of `metric`.

    The mean is taken over employees with at least one mistake; an empty
    input yields no suspects and a None threshold.
    """
    if metric not in METRICS:
        raise ValueError(f"Unknown metric '{metric}' (expected one of {', '.join(METRICS)})")
    if errors.empty:
        return errors.copy(), None

    # exact rationals: a value equal to the mean must never compare as greater
    if metric == "rate":
        values = [Fraction(int(m), int(s))
                  for m, s in zip(errors["mistake_count"], errors["surveyed_count"])]
    else:
        values = [Fraction(int(m)) for m in errors["mistake_count"]]
    mean = sum(values, Fraction(0)) / len(values)
    above = pd.Series([v > mean for v in values], index=errors.index, dtype=bool)
    mean = float(mean)
    suspects = errors.loc[above]
    suspects = suspects.sort_values(
        [METRICS[metric], "employee_name"], ascending=[False, True], kind="mergesort"
    ).reset_index(drop=True)
    return suspects, mean


def keyword_mask(statements: pd.Series, keyword: str,
                 mode: str = DEFAULT_MATCH_MODE) -> pd.Series:
    """Boolean mask of statements that carry the keyword signal.

    exact            case-sensitive substring
    case_insensitive substring, any case ("cashier" matches "cash")
    word_boundary    whole word, any case
    fuzzy            rapidfuzz partial_ratio >= FUZZY_CUTOFF, any case
    """
    if not keyword or not keyword.strip():
        raise ValueError("Keyword must not be empty")
    if mode not in MATCH_MODES:
        raise ValueError(f"Unknown match mode '{mode}' (expected one of {', '.join(MATCH_MODES)})")

    text = statements.fillna("").astype(str)
    if mode == "exact":
        mask = text.str.contains(keyword, regex=False)
    elif mode == "case_insensitive":
        mask = text.str.lower().str.contains(keyword.lower(), regex=False)
    elif mode == "word_boundary":
        pattern = r"\b" + re.escape(keyword) + r"\b"
        mask = text.str.contains(pattern, flags=re.IGNORECASE, regex=True)
    else:
        kw = keyword.lower()
        mask = text.apply(
            lambda s: bool(s) and fuzz.partial_ratio(kw, s.lower()) >= FUZZY_CUTOFF
        )
    return mask.astype(bool) & statements.notna()


def correlate_signal(discrepancies: pd.DataFrame, suspect_names, keyword: str,
                     mode: str = DEFAULT_MATCH_MODE) -> tuple:
    """Split keyword-bearing discrepancies into suspect and control evidence.

    Unattributed rows can never be suspects, so a matching one ends up in
    the control set.
    """
    hits = discrepancies.loc[keyword_mask(discrepancies["statement"], keyword, mode)]
    is_suspect = hits["employee_name"].isin(set(suspect_names))

    def _evidence(rows):
        return rows[EVIDENCE_COLUMNS].sort_values(
            ["employee_name", "location_id"], kind="mergesort", na_position="last"
        ).reset_index(drop=True)

    return _evidence(hits.loc[is_suspect]), _evidence(hits.loc[~is_suspect])


# ══════════════════════════════════════════════════════════════
# DISCREPANCY ENGINE
# ══════════════════════════════════════════════════════════════

def _records(df: pd.DataFrame) -> list:
    """DataFrame → list of plain dicts (NA → None, numpy → builtins)."""
    rows = []
    for rec in df.to_dict(orient="records"):
        clean = {}
        for k, v in rec.items():
            if v is None or (not isinstance(v, str) and pd.isna(v)):
                clean[k] = None
            elif isinstance(v, np.integer):
                clean[k] = int(v)
            elif isinstance(v, (float, np.floating)):
                clean[k] = round(float(v), 4)
            else:
                clean[k] = v
        rows.append(clean)
    return rows


class DiscrepancyEngine:
    def __init__(self, snapshot: Snapshot, keyword: str = DEFAULT_KEYWORD,
                 match_mode: str = DEFAULT_MATCH_MODE, metric: str = DEFAULT_METRIC):
        if not keyword or not keyword.strip():
            raise ValueError("Keyword must not be empty")
        if match_mode not in MATCH_MODES:
            raise ValueError(f"Unknown match mode '{match_mode}'")
        if metric not in METRICS:
            raise ValueError(f"Unknown metric '{metric}'")
        self.snapshot = snapshot
        self.keyword = keyword.strip()
        self.match_mode = match_mode
        self.metric = metric
        self.logs: list[str] = []

    # ── helpers ──────────────────────────────────────────────
    def _log(self, msg: str, level: int = logging.INFO):
        self.logs.append(msg)
        logger.log(level, msg)

    # ── run all ──────────────────────────────────────────────
    def run(self) -> dict:
        self.logs = []
        snap = self.snapshot
        self._log(f"Loaded: {len(snap.audits)} audited locations, {len(snap.visits)} visits, "
                  f"{len(snap.observations)} observations, {len(snap.employees)} employees")

        resolved, missing = resolve_matches(snap)
        self._log(f"[1/5] MATCH: {len(resolved)} resolved, {len(missing)} not yet surveyed")
        if missing:
            shown = ", ".join(missing[:10]) + (" …" if len(missing) > 10 else "")
            self._log(f"    Missing first visit or observation: {shown}")

        discrepancies = extract_discrepancies(resolved)
        unknown = int((resolved["true_score"].isna() | resolved["observed_score"].isna()).sum())
        matching = len(resolved) - len(discrepancies) - unknown
        self._log(f"[2/5] DISCREPANCIES: {len(discrepancies)}  "
                  f"(matching: {matching}, unknown score: {unknown})")

        errors, unattributed = count_errors(discrepancies, resolved)
        self._log(f"[3/5] ERROR COUNTS: {len(errors)} employees, "
                  f"{int(errors['mistake_count'].sum())} attributed mistakes")
        if unattributed:
            self._log(f"    {unattributed} discrepancies without a directory entry "
                      f"(excluded from counts)", logging.WARNING)

        suspects, threshold = classify_outliers(errors, self.metric)
        if threshold is None:
            self._log("[4/5] OUTLIERS: no employees with mistakes → no suspects")
        else:
            self._log(f"[4/5] OUTLIERS: {len(suspects)} above mean "
                      f"{METRICS[self.metric]}={threshold:.2f}")

        suspect_ev, control_ev = correlate_signal(
            discrepancies, suspects["employee_name"], self.keyword, self.match_mode
        )
        self._log(f"[5/5] SIGNAL '{self.keyword}' ({self.match_mode}): "
                  f"{len(suspect_ev)} suspect, {len(control_ev)} control")

        return self._export(snap, resolved, missing, matching, unknown, discrepancies,
                            errors, unattributed, suspects, threshold,
                            suspect_ev, control_ev)

    def _export(self, snap, resolved, missing, matching, unknown, discrepancies,
                errors, unattributed, suspects, threshold,
                suspect_ev, control_ev) -> dict:
        n_susp = len(suspects)
        names = ", ".join(suspects["employee_name"].tolist()) or "none"
        message = (f"{len(discrepancies)} discrepancies, {n_susp} suspect employees "
                   f"({names}), {len(suspect_ev)} '{self.keyword}' statements from suspects")
        self._log(f"RESULT: {message}")

        statistics = {
            "locations_audited":   len(snap.audits),
            "locations_resolved":  len(resolved),
            "locations_missing":   len(missing),
            "matching_scores":     matching,
            "unknown_scores":      unknown,
            "discrepancies":       len(discrepancies),
            "unattributed":        unattributed,
            "employees_with_errors": len(errors),
            "mean_threshold":      round(threshold, 4) if threshold is not None else None,
            "suspects":            n_susp,
            "suspect_evidence":    len(suspect_ev),
            "control_evidence":    len(control_ev),
            "keyword":             self.keyword,
            "match_mode":          self.match_mode,
            "metric":              self.metric,
        }
        return {
            "message": message,
            "statistics": statistics,
            "discrepancies": _records(discrepancies),
            "error_counts": _records(errors),
            "suspects": _records(suspects),
            "suspect_evidence": _records(suspect_ev),
            "control_evidence": _records(control_ev),
            "missing_locations": list(missing),
            "logs": list(self.logs),
        }
