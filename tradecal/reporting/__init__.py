"""Report writers."""

from tradecal.reporting.output import write_backtest_csv, write_dashboard_report, write_rows_csv

__all__ = ["write_backtest_csv", "write_dashboard_report", "write_rows_csv"]
