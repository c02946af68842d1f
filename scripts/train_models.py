"""
Train Models Script

Trains the anomaly and/or predictive engine on the analytic store and
registers the new artifacts.

Usage:
    python scripts/train_models.py [--engine anomaly] [--models-dir models] [--no-promote]
"""
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import argparse

from config.settings import settings
from src.supplytrace.ml.training.train_engines import ENGINE_NAMES, train_engines
from src.supplytrace.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


def parse_args():
    parser = argparse.ArgumentParser(description="Train supply chain analysis engines")
    parser.add_argument(
        "--engine",
        choices=ENGINE_NAMES,
        action="append",
        help="Engine to train (repeatable; default: all)",
    )
    parser.add_argument(
        "--models-dir",
        type=Path,
        default=Path(settings.models_dir),
        help="Directory for versioned artifacts",
    )
    parser.add_argument("--limit", type=int, default=None, help="Train on the newest N rows only")
    parser.add_argument("--no-promote", action="store_true", help="Register without activating")
    return parser.parse_args()


def main():
    args = parse_args()
    setup_logging()

    artifacts = train_engines(
        engines=args.engine or ENGINE_NAMES,
        models_dir=args.models_dir,
        promote=not args.no_promote,
        limit=args.limit,
    )

    for name, artifact in artifacts.items():
        print(f"{name}: version={artifact.version} metrics={artifact.metrics}")


if __name__ == "__main__":
    main()
