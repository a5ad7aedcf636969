"""Gate aggregation over validator adapters."""

from .aggregator import TEST_STAGE, GateAggregator, aggregate, summarize, verdict_stats

__all__ = ["GateAggregator", "TEST_STAGE", "aggregate", "summarize", "verdict_stats"]
