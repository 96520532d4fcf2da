"""Result records returned by the coupling orchestrator.

Every stage reports through these records instead of log lines, so callers
and tests read convergence, residuals and thermal limiting directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from feederflow.engine.network.complex_math import ComplexNumber
from feederflow.engine.network.phase_distribution import PhaseTriple
from feederflow.schemas.network import CalculationScenario


class ConvergenceStatus(str, Enum):
    CONVERGED = "converged"
    NOT_CONVERGED = "not_converged"


class DiagnosticCode(str, Enum):
    MISSING_NODE = "missing_node"
    UNREACHABLE_NODE = "unreachable_node"
    SOURCE_NODE = "source_node"
    DUPLICATE_DEVICE = "duplicate_device"
    NODE_CONFLICT = "node_conflict"
    INVALID_IMPEDANCE = "invalid_impedance"
    IMPEDANCE_CLAMPED = "impedance_clamped"
    BELOW_TOLERANCE = "below_tolerance"
    DECOMPOSITION_FALLBACK = "decomposition_fallback"
    THERMAL_LIMITED = "thermal_limited"
    POWER_SATURATED = "power_saturated"
    NOT_CONVERGED = "not_converged"
    INVALID_UPGRADE = "invalid_upgrade"


def _phasors(values: tuple[ComplexNumber, ...]) -> list[dict[str, float]]:
    return [v.to_dict() for v in values]


@dataclass
class Notice:
    """A calculation-level event that is not tied to one device result."""
    code: DiagnosticCode
    message: str
    device_id: str | None = None
    node_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "device_id": self.device_id,
            "node_id": self.node_id,
        }


@dataclass
class NodeVoltageResult:
    node_id: str
    voltages: PhaseTriple  # phase-to-neutral magnitudes (V)
    neutral_voltage_v: float
    phasors: tuple[ComplexNumber, ComplexNumber, ComplexNumber]

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "voltages_v": self.voltages.to_dict(3),
            "neutral_voltage_v": round(self.neutral_voltage_v, 3),
            "phasors": _phasors(self.phasors),
        }


@dataclass
class CableCurrentResult:
    cable_id: str
    from_node_id: str
    to_node_id: str
    currents: PhaseTriple  # A
    neutral_current_a: float
    voltage_drop_v: PhaseTriple
    voltage_drop_pct: PhaseTriple

    def to_dict(self) -> dict[str, Any]:
        return {
            "cable_id": self.cable_id,
            "from_node_id": self.from_node_id,
            "to_node_id": self.to_node_id,
            "currents_a": self.currents.to_dict(3),
            "neutral_current_a": round(self.neutral_current_a, 3),
            "voltage_drop_v": self.voltage_drop_v.to_dict(3),
            "voltage_drop_pct": self.voltage_drop_pct.to_dict(2),
        }


@dataclass
class RegulatorDiagnostic:
    device_id: str
    node_id: str
    active: bool = False
    input_voltages: PhaseTriple = field(default_factory=PhaseTriple)
    states: dict[str, str] = field(default_factory=dict)
    coefficients_pct: PhaseTriple = field(default_factory=PhaseTriple)
    output_voltages: PhaseTriple = field(default_factory=PhaseTriple)
    series_voltages: tuple[ComplexNumber, ...] = ()
    voltage_improvement_v: float = 0.0
    efficiency_pct: float = 0.0
    residual_error_v: float = 0.0
    regulation_active: bool = False
    power_saturated: bool = False
    converged: bool = True
    codes: list[DiagnosticCode] = field(default_factory=list)
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "node_id": self.node_id,
            "active": bool(self.active),
            "input_voltages_v": self.input_voltages.to_dict(3),
            "states": dict(self.states),
            "coefficients_pct": self.coefficients_pct.to_dict(),
            "output_voltages_v": self.output_voltages.to_dict(3),
            "series_voltages": _phasors(self.series_voltages),
            "voltage_improvement_v": round(self.voltage_improvement_v, 3),
            "efficiency_pct": round(self.efficiency_pct, 2),
            "residual_error_v": round(self.residual_error_v, 3),
            "regulation_active": bool(self.regulation_active),
            "power_saturated": bool(self.power_saturated),
            "converged": bool(self.converged),
            "codes": [c.value for c in self.codes],
            "message": self.message,
        }


@dataclass
class CompensatorDiagnostic:
    device_id: str
    node_id: str
    active: bool = False
    initial_voltages: PhaseTriple = field(default_factory=PhaseTriple)
    target_voltages: PhaseTriple = field(default_factory=PhaseTriple)
    achieved_voltages: PhaseTriple = field(default_factory=PhaseTriple)
    initial_spread_v: float = 0.0
    target_spread_v: float = 0.0
    achieved_spread_v: float = 0.0
    zph_ohm: float = 0.0
    zn_ohm: float = 0.0
    natural_neutral_current_a: float = 0.0
    estimated_current_a: float = 0.0
    injected_current_a: float = 0.0
    injected_phasor: ComplexNumber = field(default_factory=ComplexNumber)
    phase_injections: tuple[ComplexNumber, ...] = ()
    thermal_limit_a: float = 0.0
    thermal_limited: bool = False
    iterations: int = 0
    residual_v: float = 0.0
    converged: bool = True
    codes: list[DiagnosticCode] = field(default_factory=list)
    message: str = ""

    @property
    def reduction_pct(self) -> float:
        if self.initial_spread_v <= 0:
            return 0.0
        return (self.initial_spread_v - self.achieved_spread_v) / self.initial_spread_v * 100.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "node_id": self.node_id,
            "active": bool(self.active),
            "initial_voltages_v": self.initial_voltages.to_dict(3),
            "target_voltages_v": self.target_voltages.to_dict(3),
            "achieved_voltages_v": self.achieved_voltages.to_dict(3),
            "initial_spread_v": round(self.initial_spread_v, 3),
            "target_spread_v": round(self.target_spread_v, 3),
            "achieved_spread_v": round(self.achieved_spread_v, 3),
            "reduction_pct": round(self.reduction_pct, 2),
            "zph_ohm": round(self.zph_ohm, 4),
            "zn_ohm": round(self.zn_ohm, 4),
            "natural_neutral_current_a": round(self.natural_neutral_current_a, 3),
            "estimated_current_a": round(self.estimated_current_a, 3),
            "injected_current_a": round(self.injected_current_a, 3),
            "injected_phasor": self.injected_phasor.to_dict(),
            "phase_injections": _phasors(self.phase_injections),
            "thermal_limit_a": round(float(self.thermal_limit_a), 3),
            "thermal_limited": bool(self.thermal_limited),
            "iterations": self.iterations,
            "residual_v": round(self.residual_v, 3),
            "converged": bool(self.converged),
            "codes": [c.value for c in self.codes],
            "message": self.message,
        }


@dataclass
class InjectionPhasors:
    """Calibrated compensator currents at one node, reusable as a seed."""
    node_id: str
    neutral: ComplexNumber
    phases: tuple[ComplexNumber, ComplexNumber, ComplexNumber]

    @property
    def magnitude_a(self) -> float:
        return self.neutral.magnitude

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "neutral": self.neutral.to_dict(),
            "phases": _phasors(self.phases),
            "magnitude_a": round(self.magnitude_a, 3),
        }


@dataclass
class CalculationResult:
    """Complete output of one orchestrated calculation."""
    scenario: CalculationScenario
    convergence_status: ConvergenceStatus
    iterations: int
    solver_iterations: int
    node_voltages: dict[str, NodeVoltageResult] = field(default_factory=dict)
    cable_currents: dict[str, CableCurrentResult] = field(default_factory=dict)
    regulators: list[RegulatorDiagnostic] = field(default_factory=list)
    compensators: list[CompensatorDiagnostic] = field(default_factory=list)
    notices: list[Notice] = field(default_factory=list)
    injections: dict[str, InjectionPhasors] = field(default_factory=dict)
    calculation_id: str = ""

    @property
    def converged(self) -> bool:
        return self.convergence_status == ConvergenceStatus.CONVERGED

    def voltages(self, node_id: str) -> PhaseTriple:
        return self.node_voltages[node_id].voltages

    def regulator(self, device_id: str) -> RegulatorDiagnostic:
        return next(r for r in self.regulators if r.device_id == device_id)

    def compensator(self, device_id: str) -> CompensatorDiagnostic:
        return next(c for c in self.compensators if c.device_id == device_id)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return {
            "calculation_id": self.calculation_id,
            "scenario": self.scenario.value,
            "convergence_status": self.convergence_status.value,
            "iterations": self.iterations,
            "solver_iterations": self.solver_iterations,
            "nodes": [n.to_dict() for n in self.node_voltages.values()],
            "cables": [c.to_dict() for c in self.cable_currents.values()],
            "regulators": [r.to_dict() for r in self.regulators],
            "compensators": [c.to_dict() for c in self.compensators],
            "notices": [n.to_dict() for n in self.notices],
            "injections": {k: v.to_dict() for k, v in self.injections.items()},
        }
