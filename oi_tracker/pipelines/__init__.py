from __future__ import annotations

from oi_tracker.pipelines.orchestrator import CycleResult, Orchestrator, OrchestratorState
from oi_tracker.pipelines.publish import SignalChannel

__all__ = ["CycleResult", "Orchestrator", "OrchestratorState", "SignalChannel"]
