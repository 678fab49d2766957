#!/usr/bin/env python3
"""Run an ingestion step against the configured database.

Connection and directory settings come from the environment (see
``batchlineage.config.pipeline_config``). The step result is printed as JSON.

Usage:
    python run_batch_ingestion.py ingest --source-id labs2024 --source-type LABS
    python run_batch_ingestion.py ingest --source-id labs2024 --source-type LABS \
        --type-decisions reference/type_decisions.csv
    python run_batch_ingestion.py reconcile --older-than-hours 12
"""

import argparse
import json
import logging
import sys

from batchlineage.config.pipeline_config import get_config
from batchlineage.ingestion.lineage_logger import IngestionError
from batchlineage.steps import StepKind, run_step
from batchlineage.utils.logging_config import setup_logging
from batchlineage.utils.postgres_client import create_db_engine

log = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Batch ingestion and lineage steps")
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Ingest a source's incoming files")
    ingest.add_argument("--source-id", required=True, help="Registered source identifier")
    ingest.add_argument("--source-type", required=True, help="Dictionary source type")
    ingest.add_argument("--ingest-id", default=None, help="Batch identifier (generated if omitted)")
    ingest.add_argument(
        "--type-decisions", default=None, help="Type-decision CSV; enables staging promotion"
    )

    reconcile = sub.add_parser("reconcile", help="Close batches abandoned mid-run")
    reconcile.add_argument(
        "--older-than-hours", type=float, default=None,
        help="Stale threshold (default: INGEST_STALE_AFTER_HOURS)",
    )
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config = get_config()
    setup_logging(config.log_level)
    engine = create_db_engine(config.postgres.connection_string)

    try:
        if args.command == "ingest":
            result = run_step(
                StepKind.INGEST_BATCH,
                engine,
                config,
                source_id=args.source_id,
                source_type=args.source_type,
                ingest_id=args.ingest_id,
                type_decisions_path=args.type_decisions,
            )
        else:
            result = run_step(
                StepKind.RECONCILE_STALE, engine, config, older_than_hours=args.older_than_hours
            )
    except IngestionError as exc:
        log.error("Step '%s' aborted: %s", args.command, exc)
        return 1
    finally:
        engine.dispose()

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
