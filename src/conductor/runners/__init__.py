from conductor.runners.base import OutputHook, PhaseRequest, PhaseResult, PhaseRunner
from conductor.runners.process import ProcessPhaseRunner

__all__ = ["OutputHook", "PhaseRequest", "PhaseResult", "PhaseRunner", "ProcessPhaseRunner"]
