"""Coupling orchestrator and calculation result records."""

from .orchestrator import CouplingOrchestrator, run_calculation
from .results import CalculationResult, ConvergenceStatus, DiagnosticCode

__all__ = [
    "CouplingOrchestrator",
    "run_calculation",
    "CalculationResult",
    "ConvergenceStatus",
    "DiagnosticCode",
]
