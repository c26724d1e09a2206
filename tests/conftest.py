"""
Shared fixtures: raw relation frames shaped like the database export.
"""

import pandas as pd
import pytest

EMPLOYEES = {"1": "Alice Mwangi", "2": "Bongani Zulu", "3": "Chidi Okafor"}

# location, employee_id, true score, observed score, statement
EXAMPLE_ROWS = [
    ("A01", "1", 9, 3, "Paid cash for repair"),
    ("A02", "1", 8, 2, "Queue was long"),
    ("A03", "1", 7, 1, "Tap broken since June"),
    ("A04", "1", 6, 10, "Water looked dirty"),
    ("A05", "1", 0, 5, "No comment"),
    ("B01", "2", 5, 6, "Cash register nearby"),
    ("B02", "2", 4, 9, "Busy market"),
    ("C01", "3", 3, 8, "Clean well"),
    ("C02", "3", 2, 7, "Long walk"),
    ("M01", "2", 5, 5, "Someone mentioned cash"),
    ("M02", "3", 6, 6, "All good"),
    ("M03", "1", 7, 7, "All good"),
]


def _score(v):
    return "" if v is None else str(v)


def make_frames(rows=EXAMPLE_ROWS, employees=None, extra_visits=(), sources=False) -> dict:
    """Build raw relation frames (all strings, original column names).

    extra_visits: (location, employee_id, visit_count, observed score) tuples
    for follow-up visits; they get their own record ids.
    """
    employees = EMPLOYEES if employees is None else employees
    audits = pd.DataFrame({
        "location_id": [r[0] for r in rows],
        "type_of_water_source": ["well"] * len(rows),
        "true_water_source_score": [_score(r[2]) for r in rows],
        "statements": [r[4] for r in rows],
    })
    visits = [
        {"record_id": f"R-{r[0]}", "location_id": r[0], "source_id": f"S-{r[0]}",
         "assigned_employee_id": r[1], "visit_count": "1"}
        for r in rows
    ]
    quality = [
        {"record_id": f"R-{r[0]}", "subjective_quality_score": _score(r[3])}
        for r in rows
    ]
    for i, (loc, emp, count, observed) in enumerate(extra_visits):
        rec = f"X-{loc}-{i}"
        visits.append({"record_id": rec, "location_id": loc, "source_id": f"S-{loc}",
                       "assigned_employee_id": emp, "visit_count": str(count)})
        quality.append({"record_id": rec, "subjective_quality_score": _score(observed)})

    frames = {
        "audits": audits,
        "visits": pd.DataFrame(visits),
        "observations": pd.DataFrame(quality),
        "employees": pd.DataFrame({
            "assigned_employee_id": list(employees),
            "employee_name": list(employees.values()),
            "email": [f"{n.lower().replace(' ', '.')}@ndogowater.gov" for n in employees.values()],
        }),
    }
    if sources:
        frames["sources"] = pd.DataFrame({
            "source_id": [f"S-{r[0]}" for r in rows],
            "type_of_water_source": ["shared_tap"] * len(rows),
        })
    return frames


@pytest.fixture
def example_frames():
    return make_frames()


@pytest.fixture
def write_csv_relations(tmp_path):
    """Write frames as ;-separated CSV files, return {relation: path}."""
    def _write(frames):
        paths = {}
        for name, df in frames.items():
            path = tmp_path / f"{name}.csv"
            df.to_csv(path, sep=";", index=False)
            paths[name] = str(path)
        return paths
    return _write
