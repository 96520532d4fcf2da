"""Four-wire backward/forward sweep power flow for radial LV feeders.

Each node carries three phase-to-ground potentials and one neutral
potential; the neutral is grounded at the source only. Loads are constant
power between phase and neutral, so an unbalanced feeder shifts the neutral
potential along the cable and the phase-to-neutral voltages spread apart.

Algorithm:
1. Flat start: every node at the source phasors, neutral at 0 V
2. Backward sweep: accumulate branch currents from the leaves, I = conj(S/U)
3. Forward sweep: V_child = V_parent − Z·I on each phase and on the neutral
4. Repeat until the largest potential change is below tolerance

Two per-node hooks let device models act on the network without touching
the topology:
  - ``injections``: shunt currents injected at a node on each conductor
  - ``series_ratios``: a real per-phase voltage ratio applied at the node's
    input (an ideal series autotransformer); the upstream phase current is
    scaled by the same ratio and the difference returns on the neutral
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping, Protocol

import numpy as np
from numpy.typing import NDArray

from feederflow.config import Settings, settings as default_settings
from feederflow.engine.network.network_model import NetworkModel
from feederflow.engine.network.phase_distribution import (
    PhaseTriple,
    calculate_node_phase_distribution,
)
from feederflow.schemas.network import CalculationScenario, LoadModel, ManualLoadType

logger = logging.getLogger(__name__)

# Source phasor rotation A, B, C
PHASE_ROTATION: NDArray[np.complex128] = np.exp(-2j * np.pi / 3 * np.arange(3))

_MIN_PHASE_VOLTAGE_V = 1e-6


@dataclass(frozen=True)
class NodeInjection:
    """Shunt currents injected into the network at one node (A).

    A device that draws current from the neutral and returns it on the
    phases has ``neutral_current = -Σ phase_currents``.
    """
    phase_currents: tuple[complex, complex, complex]
    neutral_current: complex = 0j

    def as_array(self) -> NDArray[np.complex128]:
        return np.array(self.phase_currents, dtype=np.complex128)

    @property
    def magnitude_a(self) -> float:
        return abs(self.neutral_current)


@dataclass
class BranchFlowResult:
    """Currents through one cable, oriented away from the source."""
    cable_id: str
    parent_id: str
    child_id: str
    phase_currents: NDArray[np.complex128]
    # Current returning toward the source on the neutral conductor
    neutral_current: complex
    voltage_drop_v: NDArray[np.float64]

    @property
    def current_magnitudes(self) -> PhaseTriple:
        return PhaseTriple.from_iterable(np.abs(self.phase_currents))

    @property
    def neutral_current_a(self) -> float:
        return abs(self.neutral_current)


@dataclass
class PowerFlowResult:
    """Results of one sweep solution."""
    converged: bool
    iterations: int
    max_mismatch: float  # V, last sweep
    # Per-node potentials referred to the grounded source neutral
    phase_voltages: dict[str, NDArray[np.complex128]] = field(default_factory=dict)
    neutral_voltages: dict[str, complex] = field(default_factory=dict)
    # Phase-to-neutral voltage ahead of a series device, for nodes that have one
    input_voltages: dict[str, NDArray[np.complex128]] = field(default_factory=dict)
    branch_flows: dict[str, BranchFlowResult] = field(default_factory=dict)

    def phase_to_neutral(self, node_id: str) -> NDArray[np.complex128]:
        return self.phase_voltages[node_id] - self.neutral_voltages[node_id]

    def voltage_magnitudes(self, node_id: str) -> PhaseTriple:
        """Phase-to-neutral magnitudes at a node (V)."""
        return PhaseTriple.from_iterable(np.abs(self.phase_to_neutral(node_id)))

    def input_voltage_magnitudes(self, node_id: str) -> PhaseTriple:
        """Phase-to-neutral magnitudes seen by a series device at the node (V)."""
        if node_id in self.input_voltages:
            return PhaseTriple.from_iterable(np.abs(self.input_voltages[node_id]))
        return self.voltage_magnitudes(node_id)

    def node_voltage_dict(self) -> dict[str, PhaseTriple]:
        """Map node id → phase-to-neutral magnitudes."""
        return {node_id: self.voltage_magnitudes(node_id) for node_id in self.phase_voltages}

    def flow_into(self, network: NetworkModel, node_id: str) -> BranchFlowResult | None:
        """Cable flow feeding a node, None at the source."""
        segment = network.upstream.get(node_id)
        if segment is None:
            return None
        return self.branch_flows[segment.cable_id]


class BaseSolver(Protocol):
    """Callable contract every base power-flow solver satisfies."""

    def __call__(
        self,
        network: NetworkModel,
        scenario: CalculationScenario,
        *,
        injections: Mapping[str, NodeInjection] | None = None,
        series_ratios: Mapping[str, NDArray[np.float64]] | None = None,
    ) -> PowerFlowResult: ...


# ======================================================================
# Per-phase demand
# ======================================================================

def node_phase_power_kva(network: NetworkModel, node_id: str) -> tuple[PhaseTriple, PhaseTriple]:
    """Declared (load, production) kVA per phase at a node, before demand factors."""
    project = network.project
    node = network.nodes[node_id]
    clients = network.clients_at(node_id)

    if project.load_model == LoadModel.BALANCED:
        load = node.load_kva + sum(c.contract_kva for c in clients)
        prod = node.production_kva + sum(c.pv_kva for c in clients)
        return PhaseTriple.uniform(load / 3.0), PhaseTriple.uniform(prod / 3.0)

    if project.load_model == LoadModel.DISTRIBUTED:
        dist = calculate_node_phase_distribution(
            clients,
            network.client_phases,
            manual_charges_kva=node.load_kva,
            manual_productions_kva=node.production_kva,
            manual_load_type=ManualLoadType.MONO,
            charges_balance=node.charges_balance or project.charges_balance,
            productions_balance=node.productions_balance or project.productions_balance,
            balance_scope=project.balance_scope,
        )
    else:
        dist = calculate_node_phase_distribution(
            clients,
            network.client_phases,
            manual_charges_kva=node.load_kva,
            manual_productions_kva=node.production_kva,
            manual_load_type=node.manual_load_type,
            charges_balance=node.charges_balance,
            productions_balance=node.productions_balance,
            balance_scope=project.balance_scope,
        )
    return dist.charges_total, dist.productions_total


def compute_phase_demands(
    network: NetworkModel,
    scenario: CalculationScenario,
) -> dict[str, NDArray[np.complex128]]:
    """Complex power drawn per phase at every reachable node (VA).

    Loads use the project power factor (lagging); productions inject at
    unity power factor. Demand factors scale declared power.
    """
    project = network.project
    load_factor = project.load_factor_pct / 100.0
    prod_factor = project.production_factor_pct / 100.0
    sin_phi = np.sqrt(max(0.0, 1.0 - project.cos_phi ** 2))
    load_unit = complex(project.cos_phi, sin_phi)

    use_loads = scenario in (CalculationScenario.CONSUMPTION, CalculationScenario.MIXED)
    use_prods = scenario in (CalculationScenario.PRODUCTION, CalculationScenario.MIXED)

    demands: dict[str, NDArray[np.complex128]] = {}
    for node_id in network.order:
        load, prod = node_phase_power_kva(network, node_id)
        s = np.zeros(3, dtype=np.complex128)
        if use_loads:
            s += load.as_array() * load_factor * load_unit * 1000.0
        if use_prods:
            s -= prod.as_array() * prod_factor * 1000.0
        demands[node_id] = s
    return demands


# ======================================================================
# Sweep
# ======================================================================

def solve_unbalanced_power_flow(
    network: NetworkModel,
    scenario: CalculationScenario,
    *,
    injections: Mapping[str, NodeInjection] | None = None,
    series_ratios: Mapping[str, NDArray[np.float64]] | None = None,
    settings: Settings | None = None,
) -> PowerFlowResult:
    """Solve the radial four-wire network by backward/forward sweep.

    Args:
        network: per-call network arena
        scenario: which declared powers are active
        injections: shunt currents per node id
        series_ratios: per-phase voltage ratio per node id (1.0 = bypass)
        settings: tolerance and iteration budget
    """
    cfg = settings or default_settings
    injections = injections or {}
    series_ratios = series_ratios or {}
    order = network.order
    demands = compute_phase_demands(network, scenario)

    e_source = network.source_voltage_v * PHASE_ROTATION
    v_phase = {node_id: e_source.copy() for node_id in order}
    v_neutral = {node_id: 0j for node_id in order}
    v_input: dict[str, NDArray[np.complex128]] = {}
    i_phase: dict[str, NDArray[np.complex128]] = {}
    i_neutral: dict[str, complex] = {}

    converged = False
    iterations = 0
    max_mismatch = float("inf")

    for iteration in range(1, cfg.sweep_max_iterations + 1):
        iterations = iteration

        # Backward sweep: current entering each node from upstream
        for node_id in reversed(order):
            u = v_phase[node_id] - v_neutral[node_id]
            load_current = np.zeros(3, dtype=np.complex128)
            live = np.abs(u) > _MIN_PHASE_VOLTAGE_V
            load_current[live] = np.conj(demands[node_id][live] / u[live])

            phase_out = load_current
            neutral_out = -load_current.sum()
            injection = injections.get(node_id)
            if injection is not None:
                phase_out = phase_out - injection.as_array()
                neutral_out -= injection.neutral_current
            for segment in network.children[node_id]:
                phase_out = phase_out + i_phase[segment.child_id]
                neutral_out += i_neutral[segment.child_id]

            ratio = series_ratios.get(node_id)
            if ratio is not None:
                i_phase[node_id] = ratio * phase_out
                i_neutral[node_id] = neutral_out - complex(((ratio - 1.0) * phase_out).sum())
            else:
                i_phase[node_id] = phase_out
                i_neutral[node_id] = neutral_out

        # Forward sweep
        new_phase: dict[str, NDArray[np.complex128]] = {}
        new_neutral: dict[str, complex] = {}
        v_input = {}
        for node_id in order:
            segment = network.upstream.get(node_id)
            if segment is None:
                vin = e_source - network.source_impedance_ohm * i_phase[node_id]
                vn = 0j
            else:
                vin = new_phase[segment.parent_id] - segment.z_phase_ohm * i_phase[node_id]
                vn = new_neutral[segment.parent_id] - segment.z_neutral_ohm * i_neutral[node_id]

            ratio = series_ratios.get(node_id)
            if ratio is not None:
                v_input[node_id] = vin - vn
                vin = vn + ratio * (vin - vn)
            new_phase[node_id] = vin
            new_neutral[node_id] = vn

        max_mismatch = max(
            max(float(np.max(np.abs(new_phase[n] - v_phase[n]))), abs(new_neutral[n] - v_neutral[n]))
            for n in order
        )
        v_phase = new_phase
        v_neutral = new_neutral

        if max_mismatch < cfg.sweep_tolerance_v:
            converged = True
            break

    if not converged:
        logger.warning(
            "Sweep did not converge after %d iterations (mismatch %.4f V)",
            iterations, max_mismatch,
            extra={"iterations": iterations, "residual_v": max_mismatch},
        )

    return PowerFlowResult(
        converged=converged,
        iterations=iterations,
        max_mismatch=max_mismatch,
        phase_voltages=v_phase,
        neutral_voltages=v_neutral,
        input_voltages=v_input,
        branch_flows=_branch_flows(network, v_phase, v_neutral, v_input, i_phase, i_neutral),
    )


def _branch_flows(
    network: NetworkModel,
    v_phase: dict[str, NDArray[np.complex128]],
    v_neutral: dict[str, complex],
    v_input: dict[str, NDArray[np.complex128]],
    i_phase: dict[str, NDArray[np.complex128]],
    i_neutral: dict[str, complex],
) -> dict[str, BranchFlowResult]:
    flows: dict[str, BranchFlowResult] = {}
    for node_id in network.order:
        segment = network.upstream.get(node_id)
        if segment is None:
            continue
        parent = segment.parent_id
        sending = np.abs(v_phase[parent] - v_neutral[parent])
        receiving = v_input.get(node_id, v_phase[node_id] - v_neutral[node_id])
        flows[segment.cable_id] = BranchFlowResult(
            cable_id=segment.cable_id,
            parent_id=parent,
            child_id=node_id,
            phase_currents=i_phase[node_id],
            neutral_current=-i_neutral[node_id],
            voltage_drop_v=sending - np.abs(receiving),
        )
    return flows
