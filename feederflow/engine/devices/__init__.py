"""Grid-conditioning devices -- SRG2 series regulator, EQUI8 neutral compensator and their placement advisors."""

from .regulator import (
    SwitchState,
    determine_switch_state,
    apply_cross_phase_constraint,
    evaluate_regulator,
    is_stabilized,
)
from .compensator import (
    CmeEstimate,
    compute_cme_targets,
    adjust_secant,
    decompose_injection,
    calibrate_injection,
)
from .placement import (
    CompensatorCandidate,
    RegulatorCandidate,
    PlacementAnalysis,
    feeder_impedance,
    find_optimal_compensator_node,
    find_optimal_regulator_node,
)

__all__ = [
    "SwitchState",
    "determine_switch_state",
    "apply_cross_phase_constraint",
    "evaluate_regulator",
    "is_stabilized",
    "CmeEstimate",
    "compute_cme_targets",
    "adjust_secant",
    "decompose_injection",
    "calibrate_injection",
    "CompensatorCandidate",
    "RegulatorCandidate",
    "PlacementAnalysis",
    "feeder_impedance",
    "find_optimal_compensator_node",
    "find_optimal_regulator_node",
]
