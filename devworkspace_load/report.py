"""
Summary output for a finished run: text summary, HTML report and raw files.
"""
import json
import logging
import os
from datetime import datetime

import pandas as pd

from . import metrics as m

logger = logging.getLogger(__name__)

HTML_REPORT_NAME = "devworkspace-load-test-report.html"
HTML_REPORT_TITLE = "DevWorkspace Operator Load Test Report (HTTP)"


def _format_value(name, key, value):
    if key in ("count", "passes", "fails"):
        return f"{int(value)}"
    if key == "rate":
        return f"{value:.4f}/s" if name != m.CHECKS else f"{value * 100:.2f}%"
    if name in (m.CREATE_DURATION, m.DELETE_DURATION, m.READY_DURATION):
        return f"{value:.2f}ms"
    return f"{value:.2f}"


def failed_metrics(threshold_results):
    return {result.threshold.metric for result in threshold_results if not result.passed}


def text_summary(snapshot: dict, threshold_results=(), indent: str = " ") -> str:
    """Render ``MetricsCollector.snapshot()`` as aligned text, one metric per line."""
    if not snapshot:
        return ""
    failing = failed_metrics(threshold_results)
    thresholded = {result.threshold.metric for result in threshold_results}
    width = max(len(name) for name in snapshot) + 3
    lines = []
    for name in sorted(snapshot):
        values = snapshot[name]["values"]
        if name in failing:
            marker = "✗"
        elif name in thresholded:
            marker = "✓"
        else:
            marker = " "
        rendered = " ".join(f"{key}={_format_value(name, key, value)}" for key, value in values.items())
        lines.append(f"{indent}{marker} {name.ljust(width, '.')}: {rendered}")
    return "\n".join(lines)


def threshold_frame(threshold_results) -> pd.DataFrame:
    return pd.DataFrame([
        {
            "metric": result.threshold.metric,
            "threshold": result.threshold.expression,
            "observed": result.observed,
            "passed": result.passed,
        }
        for result in threshold_results
    ], columns=["metric", "threshold", "observed", "passed"])


def metrics_frame(snapshot: dict) -> pd.DataFrame:
    rows = []
    for name, entry in sorted(snapshot.items()):
        row = {"metric": name, "type": entry["type"]}
        row.update(entry["values"])
        rows.append(row)
    return pd.DataFrame(rows)


def html_report(snapshot: dict, threshold_results, title: str = HTML_REPORT_TITLE,
                outcome_counts=None) -> str:
    """Self-contained HTML document with metrics and thresholds tables."""
    outcomes = pd.DataFrame(sorted((outcome_counts or {}).items()), columns=["outcome", "count"])
    generated = datetime.now().isoformat(timespec="seconds")
    return (
        "<!DOCTYPE html>\n<html>\n<head>\n<meta charset=\"utf-8\">\n"
        f"<title>{title}</title>\n"
        "<style>body{font-family:sans-serif;margin:2em}table{border-collapse:collapse}"
        "td,th{border:1px solid #ccc;padding:4px 8px}</style>\n"
        "</head>\n<body>\n"
        f"<h1>{title}</h1>\n<p>Generated {generated}</p>\n"
        "<h2>Thresholds</h2>\n"
        f"{threshold_frame(threshold_results).to_html(index=False, float_format=lambda v: f'{v:.2f}')}\n"
        "<h2>Iteration outcomes</h2>\n"
        f"{outcomes.to_html(index=False)}\n"
        "<h2>Metrics</h2>\n"
        f"{metrics_frame(snapshot).to_html(index=False, na_rep='', float_format=lambda v: f'{v:.2f}')}\n"
        "</body>\n</html>\n"
    )


def create_output_dir(base_dir: str) -> str:
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    output_dir = os.path.join(base_dir, f"test_run_{timestamp}")
    os.makedirs(output_dir, exist_ok=True)
    return output_dir


def save_results(output_dir: str, collector: m.MetricsCollector, run_result, include_html: bool = True) -> dict:
    """Write summary.json, per-trend CSVs, results.csv and optionally the HTML report.

    Returns a mapping of artifact name to path.
    """
    paths = {}
    full_snapshot = collector.snapshot()
    filtered = collector.snapshot(m.SUMMARY_METRICS)
    threshold_results = run_result.threshold_results

    summary = {
        "start_time": run_result.start_time.isoformat(),
        "end_time": run_result.end_time.isoformat(),
        "duration_seconds": (run_result.end_time - run_result.start_time).total_seconds(),
        "stages": [stage.as_executor_stage() for stage in run_result.stages],
        "outcomes": run_result.outcome_counts,
        "metrics": filtered,
        "thresholds": threshold_frame(threshold_results).to_dict(orient="records"),
        "thresholds_passed": run_result.thresholds_passed,
    }
    paths["summary"] = os.path.join(output_dir, "summary.json")
    with open(paths["summary"], 'w') as f:
        json.dump(summary, f, indent=2, default=str)

    for name in (m.CREATE_DURATION, m.DELETE_DURATION, m.READY_DURATION, m.OPERATOR_CPU, m.OPERATOR_MEMORY):
        values = collector.trend_values(name)
        if not values:
            continue
        path = os.path.join(output_dir, f"{name}.csv")
        pd.DataFrame({name: values}).to_csv(path, index=False)
        paths[name] = path

    if run_result.cycle_results:
        paths["results"] = os.path.join(output_dir, "results.csv")
        pd.DataFrame([r.as_record() for r in run_result.cycle_results]).to_csv(paths["results"], index=False)

    if include_html:
        paths["html"] = os.path.join(output_dir, HTML_REPORT_NAME)
        with open(paths["html"], 'w') as f:
            f.write(html_report(full_snapshot, threshold_results, outcome_counts=run_result.outcome_counts))

    logger.info(f"Saved results to {output_dir}")
    return paths
