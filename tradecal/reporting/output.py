"""Report writers for dashboard and backtest results."""

from pathlib import Path
from typing import Dict, List, Union
import csv
import json
import logging

logger = logging.getLogger(__name__)


def write_rows_csv(rows: List[Dict], output_path: Union[str, Path]) -> None:
    """Write dict rows to CSV; keys missing from the first row are appended sorted."""
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if not rows:
        path.write_text("", encoding="utf-8")
        return

    fieldnames = list(rows[0].keys())
    extra_keys = set()
    for row in rows[1:]:
        extra_keys.update(key for key in row.keys() if key not in fieldnames)
    if extra_keys:
        fieldnames.extend(sorted(extra_keys))
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(rows)


def write_dashboard_report(dashboard: Dict, output_dir: Union[str, Path]) -> Dict[str, str]:
    """Write the dashboard JSON plus bucket and segment CSVs.

    Returns:
        Mapping of artifact name to written path
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    buckets_path = output_dir / "calibration_buckets.csv"
    write_rows_csv(dashboard.get("buckets") or [], buckets_path)
    segments_path = output_dir / "calibration_segments.csv"
    write_rows_csv(dashboard.get("segments") or [], segments_path)

    summary_path = output_dir / "calibration_dashboard.json"
    summary_path.write_text(
        json.dumps(dashboard, indent=2, sort_keys=True, default=str),
        encoding="utf-8",
    )
    logger.info(f"Wrote dashboard report to {output_dir}")
    return {
        "summary": str(summary_path),
        "buckets_csv": str(buckets_path),
        "segments_csv": str(segments_path),
    }


def write_backtest_csv(report: Dict, output_path: Union[str, Path]) -> None:
    """Flatten ``run_backtest`` output into one row per segment-week."""
    rows = []
    for segment, result in sorted((report.get("segments") or {}).items()):
        for week in result.get("results") or []:
            row = {"segment": segment}
            row.update(week)
            rows.append(row)
    write_rows_csv(rows, output_path)
