"""CLI entry points for the trade engine."""

from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple
import argparse
import json
import logging
import uuid

from tradecal.config import Config
from tradecal.engine import TradeEngine
from tradecal.exceptions import TradeEngineError
from tradecal.models.records import TradeOffer
from tradecal.ops import configure_logging, get_metrics_recorder
from tradecal.reporting import write_backtest_csv, write_dashboard_report
from tradecal.storage import JsonFileRepository
from tradecal.valuation.market import MarketFeed

logger = logging.getLogger(__name__)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date/time: {value} (expected ISO format)")


def _load_json(path: str) -> Any:
    return json.loads(Path(path).read_text(encoding="utf-8"))


def _build_engine(config_path: Optional[str], feed_path: Optional[str] = None) -> TradeEngine:
    configure_logging(run_id=uuid.uuid4().hex[:12])
    config = Config.load(config_path)
    feed = MarketFeed.from_rows(_load_json(feed_path)) if feed_path else None
    repository = JsonFileRepository(config.data_dir)
    logger.debug(f"Using repository at {repository.base_dir}")
    return TradeEngine(repository, feed=feed, config=config, metrics=get_metrics_recorder())


def _parse_drill_down(value: Optional[str]) -> Optional[Tuple[str, Optional[str]]]:
    if not value:
        return None
    if "=" in value:
        key, raw = value.split("=", 1)
        return key.strip(), raw.strip()
    return value.strip(), None


def run_analyze(config_path: Optional[str], offer_path: str, feed_path: Optional[str] = None) -> int:
    engine = _build_engine(config_path, feed_path)
    offer = TradeOffer.from_dict(_load_json(offer_path))
    analysis = engine.analyze_trade(offer)
    _print_json(analysis.to_dict())
    return 0


def run_record_outcome(config_path: Optional[str], offer_id: str, accepted: bool,
                       observed_at: Optional[str] = None) -> int:
    engine = _build_engine(config_path)
    outcome = engine.record_outcome(offer_id, accepted, _parse_datetime(observed_at))
    _print_json(outcome.to_dict())
    return 0


def run_learn(config_path: Optional[str], segment: Optional[str] = None,
              force_date: Optional[str] = None, dry_run: bool = False, force: bool = False) -> int:
    engine = _build_engine(config_path)
    results = engine.run_weekly_learning(segment, _parse_datetime(force_date), dry_run, force)
    _print_json([result.to_dict() for result in results])
    return 0


def run_backtest(
    config_path: Optional[str],
    segment: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    timeout_seconds: Optional[float] = None,
    output_path: Optional[str] = None,
) -> int:
    engine = _build_engine(config_path)
    report = engine.run_backtest(segment, _parse_datetime(start), _parse_datetime(end), timeout_seconds)
    if output_path:
        write_backtest_csv(report, output_path)
    _print_json(report)
    return 0


def run_dashboard(
    config_path: Optional[str],
    window_days: Optional[int] = None,
    filters: Optional[List[str]] = None,
    drill_down: Optional[str] = None,
    as_of: Optional[str] = None,
    output_dir: Optional[str] = None,
) -> int:
    engine = _build_engine(config_path)
    dashboard = engine.get_dashboard(
        window_days=window_days,
        filters=filters or None,
        drill_down=_parse_drill_down(drill_down),
        as_of=_parse_datetime(as_of),
    )
    if output_dir:
        dashboard["artifacts"] = write_dashboard_report(dashboard, output_dir)
    _print_json(dashboard)
    return 0


def run_drift(config_path: Optional[str], segment: Optional[str] = None, as_of: Optional[str] = None) -> int:
    engine = _build_engine(config_path)
    report = engine.run_drift_detection(segment, _parse_datetime(as_of))
    _print_json(report.to_dict())
    return 0


def run_drift_report(config_path: Optional[str], segment: Optional[str] = None) -> int:
    engine = _build_engine(config_path)
    report = engine.get_drift_report(segment)
    if report is None:
        logger.warning(f"No drift report stored for {segment or 'all segments'}")
        return 1
    _print_json(report.to_dict())
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tradecal", description="Trade valuation and calibration engine")
    subparsers = parser.add_subparsers(dest="command", required=True)

    analyze = subparsers.add_parser("analyze", help="Analyze a trade offer from a JSON file")
    analyze.add_argument("--config", dest="config_path", help="Path to config file")
    analyze.add_argument("--offer", dest="offer_path", required=True, help="Path to offer JSON")
    analyze.add_argument("--feed", dest="feed_path", help="Path to market value rows JSON")

    outcome = subparsers.add_parser("record-outcome", help="Record whether an offer was accepted")
    outcome.add_argument("--config", dest="config_path", help="Path to config file")
    outcome.add_argument("--offer-id", dest="offer_id", required=True, help="Offer id")
    decision = outcome.add_mutually_exclusive_group(required=True)
    decision.add_argument("--accepted", dest="accepted", action="store_true", help="Offer was accepted")
    decision.add_argument("--rejected", dest="accepted", action="store_false", help="Offer was rejected")
    outcome.add_argument("--observed-at", dest="observed_at", help="Observation time (ISO format)")

    learn = subparsers.add_parser("learn", help="Run weekly weight learning")
    learn.add_argument("--config", dest="config_path", help="Path to config file")
    learn.add_argument("--segment", dest="segment", help="Only learn this segment")
    learn.add_argument("--force-date", dest="force_date", help="Logical run date (ISO format)")
    learn.add_argument("--dry-run", dest="dry_run", action="store_true", help="Compute without persisting")
    learn.add_argument("--force", dest="force", action="store_true", help="Refit even without new outcomes")

    backtest = subparsers.add_parser("backtest", help="Replay weekly learning over stored outcomes")
    backtest.add_argument("--config", dest="config_path", help="Path to config file")
    backtest.add_argument("--segment", dest="segment", help="Only backtest this segment")
    backtest.add_argument("--start", dest="start", help="Start date (ISO format)")
    backtest.add_argument("--end", dest="end", help="End date (ISO format)")
    backtest.add_argument("--timeout", dest="timeout_seconds", type=float, help="Time budget in seconds")
    backtest.add_argument("--output", dest="output_path", help="Write per-week rows to this CSV")

    dashboard = subparsers.add_parser("dashboard", help="Show the calibration dashboard")
    dashboard.add_argument("--config", dest="config_path", help="Path to config file")
    dashboard.add_argument("--window-days", dest="window_days", type=int, help="Window length in days")
    dashboard.add_argument(
        "--filter",
        dest="filters",
        action="append",
        help="Filter token (sf, 1qb, dynasty, redraft, tep, ppr or key=value); can be repeated",
    )
    dashboard.add_argument("--drill-down", dest="drill_down", help="key=value slice, or key for a breakdown")
    dashboard.add_argument("--as-of", dest="as_of", help="End of the window (ISO format)")
    dashboard.add_argument("--output-dir", dest="output_dir", help="Write JSON and CSV artifacts here")

    drift = subparsers.add_parser("drift", help="Run drift detection and store the report")
    drift.add_argument("--config", dest="config_path", help="Path to config file")
    drift.add_argument("--segment", dest="segment", help="Only check this segment")
    drift.add_argument("--as-of", dest="as_of", help="End of the current window (ISO format)")

    drift_report = subparsers.add_parser("drift-report", help="Show the latest stored drift report")
    drift_report.add_argument("--config", dest="config_path", help="Path to config file")
    drift_report.add_argument("--segment", dest="segment", help="Report scope")

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "analyze":
            return run_analyze(args.config_path, args.offer_path, getattr(args, "feed_path", None))
        if args.command == "record-outcome":
            return run_record_outcome(args.config_path, args.offer_id, args.accepted, args.observed_at)
        if args.command == "learn":
            return run_learn(args.config_path, args.segment, args.force_date, args.dry_run, args.force)
        if args.command == "backtest":
            return run_backtest(
                config_path=args.config_path,
                segment=args.segment,
                start=args.start,
                end=args.end,
                timeout_seconds=args.timeout_seconds,
                output_path=args.output_path,
            )
        if args.command == "dashboard":
            return run_dashboard(
                config_path=args.config_path,
                window_days=args.window_days,
                filters=args.filters,
                drill_down=args.drill_down,
                as_of=args.as_of,
                output_dir=args.output_dir,
            )
        if args.command == "drift":
            return run_drift(args.config_path, args.segment, args.as_of)
        if args.command == "drift-report":
            return run_drift_report(args.config_path, args.segment)
    except (TradeEngineError, argparse.ArgumentTypeError) as e:
        logger.error(str(e))
        return 2

    parser.error("Unknown command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
