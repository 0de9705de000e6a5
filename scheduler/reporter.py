# scheduler/reporter.py
import asyncio
import json
import logging
import os
import pandas as pd
from utils.alerts import alerts_enabled, send_alert

logger = logging.getLogger("scheduler.reporter")

REPORT_DIR = os.getenv("REPORT_DIR", "./reports")

REPORT_COLUMNS = [
    "product_id",
    "product",
    "retailer_id",
    "retailer",
    "pack_id",
    "combo_key",
    "outcome",
    "price",
    "error",
    "attempted_at",
]


async def generate_pass_report(summary, report_dir=None):
    """
    Write the per-link outcomes of a catalog pass and alert on failures.

    Creates a JSON and a CSV report named after the pass start time. When at
    least one link failed and SMTP alerts are configured, both files are
    e-mailed with a short summary of the failures.

    Args:
        summary (PassSummary): Result of the pass
        report_dir (str, optional): Output directory. Defaults to REPORT_DIR.

    Returns:
        tuple[str, str]: Paths of the JSON and CSV reports

    Output Files:
        - {report_dir}/pass_{YYYYmmdd_HHMMSS}.json
        - {report_dir}/pass_{YYYYmmdd_HHMMSS}.csv
    """
    report_dir = report_dir or REPORT_DIR
    os.makedirs(report_dir, exist_ok=True)

    filename_base = f"pass_{summary.started_at.strftime('%Y%m%d_%H%M%S')}"
    json_path = os.path.join(report_dir, f"{filename_base}.json")
    csv_path = os.path.join(report_dir, f"{filename_base}.csv")

    report = {
        "started_at": summary.started_at.isoformat(),
        "finished_at": summary.finished_at.isoformat() if summary.finished_at else None,
        "items_seen": summary.items_seen,
        "items_written": summary.items_written,
        "histories_written": summary.histories_written,
        "attempted": summary.attempted,
        "failed": summary.failed,
        "persistence_failures": summary.persistence_failures,
        "links": summary.link_results,
    }
    with open(json_path, "w", encoding="utf-8") as f:
        json.dump(report, f, indent=2)

    pd.DataFrame(summary.link_results, columns=REPORT_COLUMNS).to_csv(
        csv_path, index=False
    )
    logger.info(f"Generated pass report: {json_path}, {csv_path}")

    if not summary.failed and not summary.persistence_failures:
        return json_path, csv_path
    if not alerts_enabled():
        logger.info("Failures in this pass but SMTP alerts are not configured")
        return json_path, csv_path

    subject = (
        f"[Repricer] {summary.failed} of {summary.attempted} price fetch(es) failed"
    )
    body = (
        f"The catalog pass started at {summary.started_at.isoformat()} finished "
        f"with {summary.failed} failed fetch(es) and "
        f"{len(summary.persistence_failures)} write failure(s).\n\n"
        f"Failed links:\n"
    )
    for row in summary.link_results:
        if row["outcome"] == "failed":
            body += f"- {row['product']} | {row['retailer']} pack {row['pack_id']}: {row['error']}\n"
    for failure in summary.persistence_failures:
        body += f"- write: {failure}\n"
    body += "\nAttached are the JSON and CSV reports.\n"

    await asyncio.to_thread(send_alert, subject, body, [json_path, csv_path])
    logger.info("Failure alert sent.")
    return json_path, csv_path
