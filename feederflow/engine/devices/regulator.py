"""Tap-changing series voltage regulator (SRG2).

Per phase, the measured input voltage selects one of five switch states:

    LO2 ≥ LO2 threshold  → abatement, large step
    LO1 ≥ LO1 threshold  → abatement, small step
    BYP                  → bypass
    BO1 ≤ BO1 threshold  → boost, small step
    BO2 ≤ BO2 threshold  → boost, large step

The output is ``input × (1 + coefficient/100)``. The threshold of the
currently held state is relaxed by the hysteresis band, so a phase only
leaves a state once the voltage clears its threshold by more than the band.

The SRG2-230 variant cannot boost one phase while lowering another: when
the thresholds ask for both, the phase furthest from the target voltage
sets the direction and phases asking for the other direction bypass.
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping

import numpy as np
from numpy.typing import NDArray

from feederflow.engine.network.complex_math import ComplexNumber
from feederflow.engine.network.phase_distribution import PhaseTriple
from feederflow.schemas.equipment import RegulatorConfig, RegulatorVariant
from feederflow.schemas.network import PHASES, Phase


class SwitchState(str, Enum):
    LO2 = "LO2"
    LO1 = "LO1"
    BYP = "BYP"
    BO1 = "BO1"
    BO2 = "BO2"


ABATEMENT = frozenset({SwitchState.LO2, SwitchState.LO1})
BOOST = frozenset({SwitchState.BO1, SwitchState.BO2})

PhaseStates = dict[Phase, SwitchState]


def bypass_states() -> PhaseStates:
    return {p: SwitchState.BYP for p in PHASES}


def state_coefficient(config: RegulatorConfig, state: SwitchState) -> float:
    """Correction coefficient of a switch state, in percent."""
    return {
        SwitchState.LO2: config.lo2_coefficient_pct,
        SwitchState.LO1: config.lo1_coefficient_pct,
        SwitchState.BYP: 0.0,
        SwitchState.BO1: config.bo1_coefficient_pct,
        SwitchState.BO2: config.bo2_coefficient_pct,
    }[state]


def determine_switch_state(
    voltage: float,
    config: RegulatorConfig,
    held: SwitchState = SwitchState.BYP,
) -> SwitchState:
    """Select the switch state for one phase."""
    h = config.hysteresis_v
    lo2 = config.lo2_threshold_v - (h if held == SwitchState.LO2 else 0.0)
    lo1 = config.lo1_threshold_v - (h if held == SwitchState.LO1 else 0.0)
    bo1 = config.bo1_threshold_v + (h if held == SwitchState.BO1 else 0.0)
    bo2 = config.bo2_threshold_v + (h if held == SwitchState.BO2 else 0.0)

    if voltage >= lo2:
        return SwitchState.LO2
    if voltage >= lo1:
        return SwitchState.LO1
    if voltage <= bo2:
        return SwitchState.BO2
    if voltage <= bo1:
        return SwitchState.BO1
    return SwitchState.BYP


def apply_cross_phase_constraint(
    states: Mapping[Phase, SwitchState],
    voltages: PhaseTriple,
    target_voltage_v: float,
) -> PhaseStates:
    """Forbid simultaneous boost and abatement across phases.

    The phase with the largest deviation from the target decides; ties go
    to the first phase in A, B, C order.
    """
    result = dict(states)
    has_boost = any(s in BOOST for s in result.values())
    has_abatement = any(s in ABATEMENT for s in result.values())
    if not (has_boost and has_abatement):
        return result

    active = [p for p in PHASES if result[p] != SwitchState.BYP]
    leader = max(active, key=lambda p: (abs(voltages[p] - target_voltage_v), -PHASES.index(p)))
    keep = BOOST if result[leader] in BOOST else ABATEMENT
    for phase in PHASES:
        if result[phase] != SwitchState.BYP and result[phase] not in keep:
            result[phase] = SwitchState.BYP
    return result


def evaluate_regulator(
    config: RegulatorConfig,
    input_voltages: PhaseTriple,
    held: Mapping[Phase, SwitchState] | None = None,
) -> PhaseStates:
    """Run the automaton once on measured input voltages."""
    held = held or bypass_states()
    states = {
        p: determine_switch_state(input_voltages[p], config, held.get(p, SwitchState.BYP))
        for p in PHASES
    }
    if config.variant == RegulatorVariant.SRG2_230:
        states = apply_cross_phase_constraint(states, input_voltages, config.target_voltage_v)
    return states


def is_stabilized(previous: Mapping[Phase, SwitchState], current: Mapping[Phase, SwitchState]) -> bool:
    """True when no phase changed state between two evaluations."""
    return all(previous.get(p) == current.get(p) for p in PHASES)


def applied_coefficients(config: RegulatorConfig, states: Mapping[Phase, SwitchState]) -> PhaseTriple:
    return PhaseTriple(*(state_coefficient(config, states[p]) for p in PHASES))


def series_ratios(config: RegulatorConfig, states: Mapping[Phase, SwitchState]) -> NDArray[np.float64]:
    """Per-phase output/input voltage ratio for the solver."""
    return 1.0 + applied_coefficients(config, states).as_array() / 100.0


def output_voltages(
    config: RegulatorConfig,
    input_voltages: PhaseTriple,
    states: Mapping[Phase, SwitchState],
) -> PhaseTriple:
    ratios = series_ratios(config, states)
    return PhaseTriple.from_iterable(input_voltages.as_array() * ratios)


def series_voltage(measured: ComplexNumber, coefficient_pct: float) -> ComplexNumber:
    """Series voltage phasor added in phase with the measured voltage."""
    return measured.scale(coefficient_pct / 100.0)


def power_saturated(
    config: RegulatorConfig,
    input_voltages: PhaseTriple,
    states: Mapping[Phase, SwitchState],
    currents: PhaseTriple,
) -> bool:
    """True when the series power exceeds the boost or abatement rating.

    Series power is Σ |ΔU_p|·I_p over phases in the given direction.
    """
    boost_kva = 0.0
    draw_kva = 0.0
    for phase in PHASES:
        delta_u = abs(input_voltages[phase] * state_coefficient(config, states[phase]) / 100.0)
        kva = delta_u * currents[phase] / 1000.0
        if states[phase] in BOOST:
            boost_kva += kva
        elif states[phase] in ABATEMENT:
            draw_kva += kva
    return bool(boost_kva > config.max_injection_kva or draw_kva > config.max_draw_kva)


def regulation_efficiency(output: PhaseTriple, target_voltage_v: float) -> float:
    """Closeness of the output to target, 0-100 %, averaged over phases."""
    scores = [
        min(100.0, max(0.0, (1.0 - abs(v - target_voltage_v) / target_voltage_v) * 100.0))
        for v in output.values()
    ]
    return sum(scores) / len(scores)
