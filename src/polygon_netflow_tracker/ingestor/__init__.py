"""Ingestion layer - Block polling, filtering and transfer extraction."""

from polygon_netflow_tracker.ingestor.engine import (
    CycleResult,
    CycleState,
    IngestionEngine,
    SkippedTransaction,
)
from polygon_netflow_tracker.ingestor.normalizer import extract_transfers, is_candidate

__all__ = [
    "CycleResult",
    "CycleState",
    "IngestionEngine",
    "SkippedTransaction",
    "extract_transfers",
    "is_candidate",
]
