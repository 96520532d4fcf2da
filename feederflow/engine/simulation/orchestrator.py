"""Coupling orchestrator for regulators and compensators.

Entry point for a calculation. Selects the active devices, resolves
conflicts, then runs one of four schemes:

- no device: a single base solver call
- regulators only: iterate the switch automaton until no state changes
- compensators only: calibrate each compensator against the solver
- both: sequential coupling. Each round calibrates the compensators on the
  current network, lets the regulators decide on the equalized voltages,
  and repeats while any regulator changed state.

A regulator and a compensator on the same node never act together: the
compensator is suppressed and a notice explains why.

All intermediate device state (switch states, series ratios, calibrated
injections) lives on a per-call ``_CalculationRun`` keyed by node id; the
input project and equipment are never modified.
"""

from __future__ import annotations

import logging
import math
from functools import partial
from typing import Mapping

import numpy as np
from numpy.typing import NDArray

from feederflow.config import Settings, settings as default_settings
from feederflow.core.logging import calculation_context
from feederflow.engine.devices.compensator import (
    CalibrationOutcome,
    calibrate_injection,
    compute_cme_targets,
    per_phase_current_limit,
)
from feederflow.engine.devices.regulator import (
    PhaseStates,
    SwitchState,
    applied_coefficients,
    bypass_states,
    evaluate_regulator,
    is_stabilized,
    power_saturated,
    regulation_efficiency,
    series_ratios,
    series_voltage,
)
from feederflow.engine.network.complex_math import ComplexNumber
from feederflow.engine.network.network_model import NetworkModel
from feederflow.engine.network.phase_distribution import PhaseTriple
from feederflow.engine.network.power_flow import (
    BaseSolver,
    NodeInjection,
    PowerFlowResult,
    solve_unbalanced_power_flow,
)
from feederflow.engine.simulation.results import (
    CableCurrentResult,
    CalculationResult,
    CompensatorDiagnostic,
    ConvergenceStatus,
    DiagnosticCode,
    InjectionPhasors,
    NodeVoltageResult,
    Notice,
    RegulatorDiagnostic,
)
from feederflow.schemas.equipment import (
    CableUpgrade,
    CompensatorConfig,
    EquipmentSet,
    RegulatorConfig,
)
from feederflow.schemas.network import PHASES, CalculationScenario, Project

logger = logging.getLogger(__name__)


class CouplingOrchestrator:
    """Runs calculations against one base solver and one settings object."""

    def __init__(self, solver: BaseSolver | None = None, settings: Settings | None = None):
        self.settings = settings or default_settings
        self.solver: BaseSolver = solver or partial(solve_unbalanced_power_flow, settings=self.settings)

    def run(
        self,
        project: Project,
        scenario: CalculationScenario,
        equipment: EquipmentSet | None = None,
        *,
        previous_injections: Mapping[str, InjectionPhasors] | None = None,
        calculation_id: str | None = None,
    ) -> CalculationResult:
        with calculation_context(calculation_id) as cid:
            run = _CalculationRun(
                solver=self.solver,
                settings=self.settings,
                project=project,
                scenario=scenario,
                equipment=equipment or EquipmentSet(),
                previous_injections=previous_injections or {},
            )
            result = run.execute()
            result.calculation_id = cid
            logger.info(
                "Calculation %s finished: %s after %d iterations",
                scenario.value, result.convergence_status.value, result.iterations,
                extra={"iterations": result.iterations, "status": result.convergence_status.value},
            )
            return result


def run_calculation(
    project: Project,
    scenario: CalculationScenario,
    equipment: EquipmentSet | None = None,
    *,
    solver: BaseSolver | None = None,
    settings: Settings | None = None,
    previous_injections: Mapping[str, InjectionPhasors] | None = None,
    calculation_id: str | None = None,
) -> CalculationResult:
    """Compute the feeder state with every enabled device in ``equipment``.

    Args:
        project: feeder description
        scenario: which declared powers are active
        equipment: regulators, compensators and cable upgrades for this call
        solver: base power flow, defaults to the bundled sweep solver
        settings: iteration budgets and tolerances
        previous_injections: calibrated injections of an earlier call, used
            to seed compensator calibration
        calculation_id: tag for log records and the result
    """
    orchestrator = CouplingOrchestrator(solver=solver, settings=settings)
    return orchestrator.run(
        project,
        scenario,
        equipment,
        previous_injections=previous_injections,
        calculation_id=calculation_id,
    )


class _CalculationRun:
    """State of one orchestrated calculation."""

    def __init__(
        self,
        solver: BaseSolver,
        settings: Settings,
        project: Project,
        scenario: CalculationScenario,
        equipment: EquipmentSet,
        previous_injections: Mapping[str, InjectionPhasors],
    ):
        self.solver = solver
        self.settings = settings
        self.scenario = scenario
        self.previous_injections = previous_injections
        self.notices: list[Notice] = []

        upgrades = self._valid_upgrades(project, equipment.cable_upgrades)
        self.network = NetworkModel.from_project(project, upgrades, settings)

        self.regulator_diagnostics: dict[str, RegulatorDiagnostic] = {}
        self.compensator_diagnostics: dict[str, CompensatorDiagnostic] = {}
        self.regulators = self._select_regulators(equipment.regulators)
        self.compensators = self._select_compensators(equipment.compensators)

        self.states: dict[str, PhaseStates] = {r.node_id: bypass_states() for r in self.regulators}
        self.ratios: dict[str, NDArray[np.float64]] = {r.node_id: np.ones(3) for r in self.regulators}
        self.injections: dict[str, NodeInjection] = {}
        self.calibrations: dict[str, CalibrationOutcome] = {}

    # ==================================================================
    # Device selection
    # ==================================================================

    def _valid_upgrades(self, project: Project, upgrades: list[CableUpgrade]) -> list[CableUpgrade]:
        cable_ids = {c.id for c in project.cables}
        type_ids = {t.id for t in project.cable_types}
        valid = []
        for upgrade in upgrades:
            if upgrade.cable_id not in cable_ids or upgrade.new_type_id not in type_ids:
                self.notices.append(Notice(
                    code=DiagnosticCode.INVALID_UPGRADE,
                    message=f"Upgrade of cable {upgrade.cable_id} to {upgrade.new_type_id} ignored",
                ))
                continue
            valid.append(upgrade)
        return valid

    def _placement_issue(self, node_id: str) -> DiagnosticCode | None:
        if not self.network.has_node(node_id):
            return DiagnosticCode.MISSING_NODE
        if not self.network.is_reachable(node_id):
            return DiagnosticCode.UNREACHABLE_NODE
        return None

    def _select_regulators(self, regulators: list[RegulatorConfig]) -> list[RegulatorConfig]:
        selected: list[RegulatorConfig] = []
        used_nodes: set[str] = set()
        for reg in regulators:
            diag = RegulatorDiagnostic(device_id=reg.id, node_id=reg.node_id)
            self.regulator_diagnostics[reg.id] = diag
            if not reg.enabled:
                diag.message = "disabled"
                continue
            issue = self._placement_issue(reg.node_id)
            if issue is None and reg.node_id in used_nodes:
                issue = DiagnosticCode.DUPLICATE_DEVICE
            if issue is not None:
                diag.codes.append(issue)
                diag.message = f"skipped: {issue.value}"
                logger.warning("Regulator %s skipped (%s)", reg.id, issue.value,
                               extra={"device_id": reg.id, "node_id": reg.node_id})
                continue
            used_nodes.add(reg.node_id)
            diag.active = True
            selected.append(reg)
        return selected

    def _select_compensators(self, compensators: list[CompensatorConfig]) -> list[CompensatorConfig]:
        regulator_nodes = {r.node_id: r.id for r in self.regulators}
        selected: list[CompensatorConfig] = []
        used_nodes: set[str] = set()
        for comp in compensators:
            diag = CompensatorDiagnostic(
                device_id=comp.id,
                node_id=comp.node_id,
                thermal_limit_a=per_phase_current_limit(comp, self.settings.nominal_phase_voltage_v),
            )
            self.compensator_diagnostics[comp.id] = diag
            if not comp.enabled:
                diag.message = "disabled"
                continue

            issue = self._placement_issue(comp.node_id)
            if issue is None and comp.node_id == self.network.source_id:
                issue = DiagnosticCode.SOURCE_NODE
            if issue is None and comp.node_id in regulator_nodes:
                issue = DiagnosticCode.NODE_CONFLICT
                self.notices.append(Notice(
                    code=issue,
                    message=(
                        f"Compensator {comp.id} suppressed: regulator "
                        f"{regulator_nodes[comp.node_id]} is installed on node {comp.node_id}"
                    ),
                    device_id=comp.id,
                    node_id=comp.node_id,
                ))
            if issue is None and comp.node_id in used_nodes:
                issue = DiagnosticCode.DUPLICATE_DEVICE
            if issue is None and not all(
                z is None or (math.isfinite(z) and z >= 0) for z in (comp.zph_ohm, comp.zn_ohm)
            ):
                issue = DiagnosticCode.INVALID_IMPEDANCE

            if issue is not None:
                diag.codes.append(issue)
                diag.message = f"skipped: {issue.value}"
                logger.warning("Compensator %s skipped (%s)", comp.id, issue.value,
                               extra={"device_id": comp.id, "node_id": comp.node_id})
                continue
            used_nodes.add(comp.node_id)
            diag.active = True
            selected.append(comp)
        return selected

    # ==================================================================
    # Schemes
    # ==================================================================

    def execute(self) -> CalculationResult:
        loop_converged = True
        if self.regulators and self.compensators:
            flow, iterations, loop_converged = self._run_coupled()
        elif self.regulators:
            flow, iterations, loop_converged = self._run_regulation()
        elif self.compensators:
            flow = self._calibrate_compensators()
            iterations = sum(c.iterations for c in self.calibrations.values())
        else:
            flow = self._solve()
            iterations = flow.iterations

        self._record_regulators(flow, loop_converged)

        compensators_ok = all(
            diag.converged or diag.thermal_limited
            for diag in self.compensator_diagnostics.values()
            if diag.active
        )
        converged = flow.converged and loop_converged and compensators_ok
        return self._build_result(flow, iterations, converged)

    def _solve(self, injections: Mapping[str, NodeInjection] | None = None) -> PowerFlowResult:
        return self.solver(
            self.network,
            self.scenario,
            injections=self.injections if injections is None else injections,
            series_ratios=self.ratios,
        )

    def _update_regulators(self, flow: PowerFlowResult) -> bool:
        """Run every automaton once. Returns True if any phase changed state."""
        changed = False
        for reg in self.regulators:
            held = self.states[reg.node_id]
            states = evaluate_regulator(reg, flow.input_voltage_magnitudes(reg.node_id), held)
            if not is_stabilized(held, states):
                changed = True
            self.states[reg.node_id] = states
            self.ratios[reg.node_id] = series_ratios(reg, states)
        return changed

    def _run_regulation(self) -> tuple[PowerFlowResult, int, bool]:
        budget = self.settings.regulator_max_iterations
        for iteration in range(1, budget + 1):
            flow = self._solve()
            if not self._update_regulators(flow):
                return flow, iteration, True
        logger.warning("Regulators did not settle within %d iterations", budget,
                       extra={"iterations": budget})
        return self._solve(), budget, False

    def _run_coupled(self) -> tuple[PowerFlowResult, int, bool]:
        budget = self.settings.coupled_max_iterations
        for iteration in range(1, budget + 1):
            self._calibrate_all()
            flow = self._solve()
            if not self._update_regulators(flow):
                return flow, iteration, True
        logger.warning("Coupled regulation did not settle within %d iterations", budget,
                       extra={"iterations": budget})
        self._calibrate_all()
        return self._solve(), budget, False

    def _calibrate_compensators(self) -> PowerFlowResult:
        self._calibrate_all()
        return self._solve()

    def _calibrate_all(self) -> None:
        for comp in self.compensators:
            self._calibrate(comp)

    # ==================================================================
    # Compensator calibration
    # ==================================================================

    def _impedances(self, comp: CompensatorConfig) -> tuple[float, float]:
        path_zph, path_zn = self.network.path_impedance(comp.node_id)
        zph = path_zph if comp.zph_ohm is None else comp.zph_ohm
        zn = path_zn if comp.zn_ohm is None else comp.zn_ohm
        return zph, zn

    def _start_current(self, node_id: str) -> float | None:
        if node_id in self.calibrations:
            return self.calibrations[node_id].current_a
        if node_id in self.previous_injections:
            return self.previous_injections[node_id].magnitude_a
        return None

    def _calibrate(self, comp: CompensatorConfig) -> None:
        cfg = self.settings
        node_id = comp.node_id
        diag = self.compensator_diagnostics[comp.id]
        diag.codes = []

        # Natural state: every other device active, this one idle
        others = {k: v for k, v in self.injections.items() if k != node_id}
        natural_flow = self._solve(others)
        natural = natural_flow.voltage_magnitudes(node_id)
        feed = natural_flow.flow_into(self.network, node_id)
        if feed is None:
            raise ValueError(f"Node {node_id} has no feeding cable")
        neutral = ComplexNumber.from_complex(feed.neutral_current)
        phase_currents = [ComplexNumber.from_complex(i) for i in feed.phase_currents]

        zph, zn = self._impedances(comp)
        estimate = compute_cme_targets(
            natural, zph, zn,
            impedance_floor_ohm=cfg.min_operating_impedance_ohm,
            min_spread_v=cfg.min_voltage_spread_v,
        )
        limit = per_phase_current_limit(comp, cfg.nominal_phase_voltage_v)

        diag.initial_voltages = natural
        diag.initial_spread_v = estimate.initial_spread_v
        diag.zph_ohm = estimate.zph_ohm
        diag.zn_ohm = estimate.zn_ohm
        diag.natural_neutral_current_a = neutral.magnitude
        diag.estimated_current_a = estimate.estimated_current_a
        diag.thermal_limit_a = limit
        if estimate.impedance_clamped:
            diag.codes.append(DiagnosticCode.IMPEDANCE_CLAMPED)

        if not estimate.active or neutral.magnitude < comp.tolerance_a:
            self.injections.pop(node_id, None)
            self.calibrations.pop(node_id, None)
            diag.codes.append(DiagnosticCode.BELOW_TOLERANCE)
            diag.message = "imbalance below tolerance, no compensation"
            diag.target_voltages = natural
            diag.target_spread_v = estimate.initial_spread_v
            diag.achieved_voltages = natural
            diag.achieved_spread_v = estimate.initial_spread_v
            diag.injected_current_a = 0.0
            diag.injected_phasor = ComplexNumber()
            diag.phase_injections = ()
            diag.thermal_limited = False
            diag.iterations = 0
            diag.residual_v = 0.0
            diag.converged = True
            return

        def evaluate(injection: NodeInjection) -> PhaseTriple:
            trial = dict(others)
            trial[node_id] = injection
            return self._solve(trial).voltage_magnitudes(node_id)

        outcome = calibrate_injection(
            estimate,
            evaluate,
            direction=neutral,
            phase_currents=phase_currents,
            limit_a=limit,
            start_current_a=self._start_current(node_id),
            settings=cfg,
        )
        self.calibrations[node_id] = outcome
        self.injections[node_id] = outcome.injection

        diag.target_voltages = estimate.target_voltages
        diag.target_spread_v = estimate.target_spread_v
        diag.achieved_voltages = outcome.voltages
        diag.achieved_spread_v = outcome.spread_v
        diag.injected_current_a = outcome.current_a
        diag.injected_phasor = outcome.split.requested
        diag.phase_injections = outcome.split.phase_currents
        diag.thermal_limited = outcome.thermal_limited
        diag.iterations = outcome.iterations
        diag.residual_v = outcome.residual_v
        diag.converged = outcome.converged
        diag.message = ""
        if outcome.split.fallback:
            diag.codes.append(DiagnosticCode.DECOMPOSITION_FALLBACK)
        if outcome.thermal_limited:
            diag.codes.append(DiagnosticCode.THERMAL_LIMITED)
        if not outcome.converged:
            diag.codes.append(DiagnosticCode.NOT_CONVERGED)

        logger.info(
            "Compensator %s: spread %.2f → %.2f V with %.1f A",
            comp.id, estimate.initial_spread_v, outcome.spread_v, outcome.current_a,
            extra={"device_id": comp.id, "node_id": node_id, "iterations": outcome.iterations,
                   "current_a": outcome.current_a, "residual_v": outcome.residual_v},
        )

    # ==================================================================
    # Reporting
    # ==================================================================

    def _through_currents(self, flow: PowerFlowResult, node_id: str) -> PhaseTriple:
        feed = flow.flow_into(self.network, node_id)
        if feed is not None:
            return feed.current_magnitudes
        total = np.zeros(3, dtype=np.complex128)
        for segment in self.network.children[node_id]:
            total = total + flow.branch_flows[segment.cable_id].phase_currents
        return PhaseTriple.from_iterable(np.abs(total))

    def _record_regulators(self, flow: PowerFlowResult, converged: bool) -> None:
        for reg in self.regulators:
            diag = self.regulator_diagnostics[reg.id]
            node_id = reg.node_id
            states = self.states[node_id]
            inputs = flow.input_voltage_magnitudes(node_id)
            outputs = flow.voltage_magnitudes(node_id)
            coefficients = applied_coefficients(reg, states)
            target = reg.target_voltage_v

            measured = flow.input_voltages.get(node_id, flow.phase_to_neutral(node_id))
            diag.input_voltages = inputs
            diag.states = {p.value: states[p].value for p in PHASES}
            diag.coefficients_pct = coefficients
            diag.output_voltages = outputs
            diag.series_voltages = tuple(
                series_voltage(ComplexNumber.from_complex(v), coefficients[p])
                for v, p in zip(measured, PHASES)
            )
            deviation_in = sum(abs(v - target) for v in inputs.values()) / 3.0
            deviation_out = sum(abs(v - target) for v in outputs.values()) / 3.0
            diag.voltage_improvement_v = deviation_in - deviation_out
            diag.efficiency_pct = regulation_efficiency(outputs, target)
            diag.residual_error_v = max(abs(v - target) for v in outputs.values())
            diag.regulation_active = any(s != SwitchState.BYP for s in states.values())
            diag.power_saturated = power_saturated(reg, inputs, states, self._through_currents(flow, node_id))
            diag.converged = converged
            diag.codes = []
            if diag.power_saturated:
                diag.codes.append(DiagnosticCode.POWER_SATURATED)
            if not converged:
                diag.codes.append(DiagnosticCode.NOT_CONVERGED)

    def _build_result(self, flow: PowerFlowResult, iterations: int, converged: bool) -> CalculationResult:
        nominal = self.settings.nominal_phase_voltage_v
        nodes: dict[str, NodeVoltageResult] = {}
        for node_id in self.network.order:
            phasors = flow.phase_to_neutral(node_id)
            a, b, c = (ComplexNumber.from_complex(v) for v in phasors)
            nodes[node_id] = NodeVoltageResult(
                node_id=node_id,
                voltages=flow.voltage_magnitudes(node_id),
                neutral_voltage_v=abs(flow.neutral_voltages[node_id]),
                phasors=(a, b, c),
            )

        cables: dict[str, CableCurrentResult] = {}
        for cable_id, branch in flow.branch_flows.items():
            drop = PhaseTriple.from_iterable(branch.voltage_drop_v)
            cables[cable_id] = CableCurrentResult(
                cable_id=cable_id,
                from_node_id=branch.parent_id,
                to_node_id=branch.child_id,
                currents=branch.current_magnitudes,
                neutral_current_a=branch.neutral_current_a,
                voltage_drop_v=drop,
                voltage_drop_pct=drop.scaled(100.0 / nominal),
            )

        injections = {
            node_id: InjectionPhasors(
                node_id=node_id,
                neutral=outcome.split.requested,
                phases=outcome.split.phase_currents,
            )
            for node_id, outcome in self.calibrations.items()
        }

        return CalculationResult(
            scenario=self.scenario,
            convergence_status=ConvergenceStatus.CONVERGED if converged else ConvergenceStatus.NOT_CONVERGED,
            iterations=iterations,
            solver_iterations=flow.iterations,
            node_voltages=nodes,
            cable_currents=cables,
            regulators=list(self.regulator_diagnostics.values()),
            compensators=list(self.compensator_diagnostics.values()),
            notices=self.notices,
            injections=injections,
        )
