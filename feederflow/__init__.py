"""Unbalanced LV feeder calculation with series regulators and neutral compensators."""

from feederflow.engine.simulation.orchestrator import CouplingOrchestrator, run_calculation

__version__ = "0.1.0"

__all__ = ["CouplingOrchestrator", "run_calculation", "__version__"]
