#!/usr/bin/env python3
"""
Audit-Discrepancy Pre-Filter v1.0
Gradio Upload UI + Discrepancy Engine + Webhook Push
"""

import os
import logging

import pandas as pd
import gradio as gr

from auditfilter.parser import load_snapshot_files, load_snapshot_workbook
from auditfilter.engine import (
    DiscrepancyEngine, DEFAULT_KEYWORD, DEFAULT_MATCH_MODE, DEFAULT_METRIC,
    MATCH_MODES, METRICS,
)
from auditfilter.export import result_frames
from auditfilter.webhook import push_report, DEFAULT_RETRIES, DEFAULT_TIMEOUT

# ── Logging ──────────────────────────────────────────────────
logging.basicConfig(level=logging.INFO, format="%(asctime)s  %(message)s")
logger = logging.getLogger("auditfilter")

# ── Config ───────────────────────────────────────────────────
REPORT_WEBHOOK_URL = os.environ.get("REPORT_WEBHOOK_URL", "")
REPORT_WEBHOOK_RETRIES = int(os.environ.get("REPORT_WEBHOOK_RETRIES", DEFAULT_RETRIES))
REPORT_WEBHOOK_TIMEOUT = float(os.environ.get("REPORT_WEBHOOK_TIMEOUT", DEFAULT_TIMEOUT))
AUDIT_KEYWORD = os.environ.get("AUDIT_KEYWORD", DEFAULT_KEYWORD)
AUDIT_MATCH_MODE = os.environ.get("AUDIT_MATCH_MODE", DEFAULT_MATCH_MODE)
AUDIT_METRIC = os.environ.get("AUDIT_METRIC", DEFAULT_METRIC)
GRADIO_USERNAME = os.environ.get("GRADIO_USERNAME", "")
GRADIO_PASSWORD = os.environ.get("GRADIO_PASSWORD", "")
ROOT_PATH = os.environ.get("ROOT_PATH", "")

ALLOWED_EXT = {".csv", ".xls", ".xlsx"}


def _path(file):
    if file is None:
        return None
    return file.name if hasattr(file, "name") else str(file)


# ══════════════════════════════════════════════════════════════
# GRADIO HANDLER
# ══════════════════════════════════════════════════════════════
def analyze_files(workbook, audits, visits, observations, employees, sources,
                  keyword: str, match_mode: str, metric: str, webhook_url: str):
    """Main Gradio handler: snapshot in → reports + webhook push."""
    empty = pd.DataFrame()
    paths = {
        "audits": _path(audits),
        "visits": _path(visits),
        "observations": _path(observations),
        "employees": _path(employees),
        "sources": _path(sources),
    }
    wb = _path(workbook)
    if wb is None and not all(paths[r] for r in ("audits", "visits", "observations", "employees")):
        return ("⚠️ Please upload one workbook or all four relation files.",
                "", empty, empty, empty, empty)

    for p in [wb, *paths.values()]:
        if p and os.path.splitext(p)[1].lower() not in ALLOWED_EXT:
            return (f"⚠️ Not supported: {os.path.basename(p)} — CSV, XLS, XLSX only",
                    "", empty, empty, empty, empty)

    # 1) Snapshot
    try:
        snapshot = load_snapshot_workbook(wb) if wb else load_snapshot_files(paths)
    except (ValueError, OSError) as e:
        return f"❌ Input error: {e}", "", empty, empty, empty, empty

    # 2) Engine
    try:
        engine = DiscrepancyEngine(snapshot, keyword=keyword or DEFAULT_KEYWORD,
                                   match_mode=match_mode, metric=metric)
    except ValueError as e:
        return f"❌ Settings error: {e}", "", empty, empty, empty, empty
    result = engine.run()

    # 3) Summary for UI
    stats = result["statistics"]
    threshold = stats["mean_threshold"]
    summary = (
        f"✅ Analysis complete\n\n"
        f"📍 Audited locations: {stats['locations_audited']} "
        f"(resolved {stats['locations_resolved']}, not yet surveyed {stats['locations_missing']})\n"
        f"❌ Discrepancies: {stats['discrepancies']} (matching: {stats['matching_scores']})\n"
        f"👤 Employees with mistakes: {stats['employees_with_errors']}"
        f" — mean {stats['metric']}: {threshold if threshold is not None else '–'}\n"
        f"🚩 Suspects: {stats['suspects']}\n"
        f"🔑 '{stats['keyword']}' ({stats['match_mode']}): "
        f"{stats['suspect_evidence']} suspect / {stats['control_evidence']} control\n"
    )
    if stats["unattributed"]:
        summary += f"⚠️ {stats['unattributed']} discrepancies without a directory entry\n"

    if result["suspects"]:
        summary += "\n🏆 Suspects:\n"
        for i, r in enumerate(result["suspects"], 1):
            summary += (f"  {i}. {r['employee_name']}  mistakes={r['mistake_count']}  "
                        f"rate={r['error_rate']:.2f}\n")

    # 4) Tables
    frames = result_frames(result)

    # 5) Webhook push
    url = webhook_url.strip() if webhook_url else REPORT_WEBHOOK_URL
    if url:
        wh_result = push_report(result, url, retries=REPORT_WEBHOOK_RETRIES,
                                timeout=REPORT_WEBHOOK_TIMEOUT)
        if "error" in wh_result:
            webhook_status = f"❌ Webhook error: {wh_result['error']}"
        else:
            webhook_status = f"✅ Webhook sent → status {wh_result['status']}"
    else:
        webhook_status = "ℹ️ No webhook URL → results shown locally only"

    summary += f"\n\n📡 {webhook_status}"

    return (summary, "\n".join(result["logs"]), frames["error_counts"],
            frames["discrepancies"], frames["suspect_evidence"], frames["control_evidence"])


# ── Build UI ─────────────────────────────────────────────────
with gr.Blocks(
    title="Audit-Discrepancy Pre-Filter",
    theme=gr.themes.Soft(),
    css="""
    .main-title { text-align: center; margin-bottom: 0.5em; }
    .subtitle   { text-align: center; color: #666; margin-bottom: 1.5em; }
    """,
) as app:

    gr.Markdown("# 🔍 Audit-Discrepancy Pre-Filter", elem_classes="main-title")
    gr.Markdown(
        "Auditor report vs. first-visit survey scores → mistakes per employee → "
        "above-average employees → keyword evidence",
        elem_classes="subtitle",
    )

    with gr.Row():
        with gr.Column(scale=2):
            workbook_input = gr.File(
                label="📘 Workbook (one sheet per relation)",
                file_types=[".xls", ".xlsx"],
                type="filepath",
            )
        with gr.Column(scale=3):
            with gr.Row():
                audits_input = gr.File(label="Auditor report", file_types=list(ALLOWED_EXT),
                                       type="filepath")
                visits_input = gr.File(label="Visits", file_types=list(ALLOWED_EXT),
                                       type="filepath")
                observations_input = gr.File(label="Water quality", file_types=list(ALLOWED_EXT),
                                             type="filepath")
            with gr.Row():
                employees_input = gr.File(label="Employees", file_types=list(ALLOWED_EXT),
                                          type="filepath")
                sources_input = gr.File(label="Water sources (optional)",
                                        file_types=list(ALLOWED_EXT), type="filepath")

    with gr.Row():
        keyword_input = gr.Textbox(label="🔑 Keyword", value=AUDIT_KEYWORD)
        mode_input = gr.Dropdown(label="Match mode", choices=list(MATCH_MODES),
                                 value=AUDIT_MATCH_MODE)
        metric_input = gr.Radio(label="Outlier metric", choices=list(METRICS),
                                value=AUDIT_METRIC)
        webhook_input = gr.Textbox(
            label="🔗 Webhook URL",
            placeholder="https://…",
            value=REPORT_WEBHOOK_URL,
            info="Empty = local analysis only, no push",
        )

    analyze_btn = gr.Button("🚀 Run analysis", variant="primary", size="lg")

    with gr.Tabs():
        with gr.Tab("📋 Result"):
            summary_output = gr.Textbox(label="Summary", lines=20, interactive=False)
        with gr.Tab("👤 Mistakes per employee"):
            errors_output = gr.Dataframe(interactive=False, wrap=True)
        with gr.Tab("❌ Discrepancies"):
            discrepancies_output = gr.Dataframe(interactive=False, wrap=True)
        with gr.Tab("🚩 Suspect evidence"):
            suspect_output = gr.Dataframe(interactive=False, wrap=True)
        with gr.Tab("🧪 Control evidence"):
            control_output = gr.Dataframe(interactive=False, wrap=True)
        with gr.Tab("📝 Logs"):
            logs_output = gr.Textbox(label="Engine logs", lines=25, interactive=False)

    analyze_btn.click(
        fn=analyze_files,
        inputs=[workbook_input, audits_input, visits_input, observations_input,
                employees_input, sources_input, keyword_input, mode_input,
                metric_input, webhook_input],
        outputs=[summary_output, logs_output, errors_output, discrepancies_output,
                 suspect_output, control_output],
    )


# ── Main ─────────────────────────────────────────────────────
if __name__ == "__main__":
    auth = (GRADIO_USERNAME, GRADIO_PASSWORD) if GRADIO_USERNAME and GRADIO_PASSWORD else None
    launch_kwargs = {
        "server_name": "0.0.0.0",
        "server_port": 7864,
        "share": False,
        "auth": auth,
    }
    if ROOT_PATH:
        launch_kwargs["root_path"] = ROOT_PATH
    app.launch(**launch_kwargs)
