from __future__ import annotations

from oi_tracker.analysis.chain_metrics import chain_to_frame, compute_max_pain, find_atm_strike, summarize_chain
from oi_tracker.analysis.patterns import PatternContext, PatternEngine, analyze

__all__ = [
    "PatternContext",
    "PatternEngine",
    "analyze",
    "chain_to_frame",
    "compute_max_pain",
    "find_atm_strike",
    "summarize_chain",
]
