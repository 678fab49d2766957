"""Static registry of the steps this package can run.

Each step kind maps to exactly one handler; callers pick a ``StepKind``
member rather than a function name, so an unknown step cannot be requested.
"""

import logging
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional

from sqlalchemy.engine import Engine

from batchlineage.config.pipeline_config import PipelineConfig
from batchlineage.ingestion.batch_ingestor import run_batch_ingestion
from batchlineage.ingestion.reconciliation import reconcile_stale_batches
from batchlineage.loaders.staging_promoter import read_type_decisions

log = logging.getLogger(__name__)


class StepKind(Enum):
    """Steps exposed to the orchestrating sequencer."""

    INGEST_BATCH = "ingest_batch"
    RECONCILE_STALE = "reconcile_stale"


def _ingest_batch(
    engine: Engine,
    config: PipelineConfig,
    source_id: str,
    source_type: str,
    ingest_id: Optional[str] = None,
    type_decisions_path: Optional[str] = None,
) -> Dict[str, Any]:
    type_decisions = read_type_decisions(type_decisions_path) if type_decisions_path else None
    result = run_batch_ingestion(
        engine,
        source_id=source_id,
        source_type=source_type,
        ingest_id=ingest_id,
        type_decisions=type_decisions,
        config=config.ingestion,
    )
    return result.as_dict()


def _reconcile_stale(
    engine: Engine,
    config: PipelineConfig,
    older_than_hours: Optional[float] = None,
) -> Dict[str, Any]:
    ingestion = config.ingestion
    if older_than_hours is None:
        older_than = ingestion.stale_after
    else:
        older_than = timedelta(hours=older_than_hours)
    reconciled = reconcile_stale_batches(engine, older_than, schema=ingestion.governance_schema)
    return {"n_reconciled": len(reconciled), "batches": reconciled}


STEP_HANDLERS: Dict[StepKind, Callable[..., Dict[str, Any]]] = {
    StepKind.INGEST_BATCH: _ingest_batch,
    StepKind.RECONCILE_STALE: _reconcile_stale,
}


def run_step(kind: StepKind, engine: Engine, config: PipelineConfig, **kwargs: Any) -> Dict[str, Any]:
    """Run the handler registered for ``kind``.

    Raises:
        ValueError: If ``kind`` is not a StepKind member.
    """
    if not isinstance(kind, StepKind):
        raise ValueError(f"Unknown step kind: {kind!r}")
    log.info("Running step '%s'", kind.value)
    return STEP_HANDLERS[kind](engine, config, **kwargs)
