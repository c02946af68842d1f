"""
Run Pipeline Script

Executes one Extract/Clean/Transform/Load run against the configured sources
and prints the run report.

Usage:
    python scripts/run_pipeline.py [--create-tables] [--no-record]

Exit code is 0 for completed and degraded runs, 1 otherwise.
"""
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import argparse
import json
import signal

from src.supplytrace.db.session import create_all_tables
from src.supplytrace.models.results import RunStatus
from src.supplytrace.pipelines.sources import build_orchestrator
from src.supplytrace.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


def parse_args():
    parser = argparse.ArgumentParser(description="Run the supply chain analytics pipeline once")
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create analytic store tables before running (local setups without Alembic)",
    )
    parser.add_argument(
        "--no-record",
        action="store_true",
        help="Do not append the run report to pipeline_runs",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    setup_logging()

    if args.create_tables:
        create_all_tables()

    orchestrator = build_orchestrator(record_runs=not args.no_record)

    # Ctrl+C / SIGTERM cancel between stages instead of killing mid-write
    def _cancel(signum, frame):
        logger.warning("pipeline_signal_received", signal=signum)
        orchestrator.cancel()

    signal.signal(signal.SIGINT, _cancel)
    signal.signal(signal.SIGTERM, _cancel)

    report = orchestrator.run()
    print(json.dumps(report.to_dict(), indent=2))

    return 0 if report.status in (RunStatus.COMPLETED, RunStatus.DEGRADED) else 1


if __name__ == "__main__":
    sys.exit(main())
