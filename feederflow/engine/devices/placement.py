"""Placement advisors for the EQUI8 compensator and the SRG2 regulator.

Both advisors read a base calculation (no devices active) and keep only the
nodes whose upstream phase impedance lies inside a window of the feeder's
total impedance, the total being the largest source-to-node impedance.

EQUI8 candidates are ranked by ``I_N / Z_up`` (highest first): strong
neutral current while the upstream impedance stays low enough that the
compensator does not dominate the local voltage.

SRG2 candidates are ranked by ``ΔU × Z_up`` (lowest first): a measurement
node with homogeneous phase voltages that still sees a representative part
of the feeder.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from feederflow.engine.network.network_model import NetworkModel
from feederflow.engine.network.phase_distribution import PhaseTriple

if TYPE_CHECKING:
    from feederflow.engine.simulation.results import CalculationResult

logger = logging.getLogger(__name__)

COMPENSATOR_MIN_RATIO = 0.10
COMPENSATOR_MAX_RATIO = 0.70
MIN_NEUTRAL_CURRENT_A = 2.0

REGULATOR_MIN_RATIO = 0.15
REGULATOR_MAX_RATIO = 0.60
MAX_DELTA_V = 8.0

# Below this the feeder is too short to rank anything
MIN_IMPEDANCE_OHM = 0.001


@dataclass
class CompensatorCandidate:
    node_id: str
    score: float  # A/Ω
    neutral_current_a: float
    zph_ohm: float
    zn_ohm: float
    position_ratio: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "score": round(self.score, 3),
            "neutral_current_a": round(self.neutral_current_a, 3),
            "zph_ohm": round(self.zph_ohm, 4),
            "zn_ohm": round(self.zn_ohm, 4),
            "position_pct": round(self.position_ratio * 100.0, 1),
        }


@dataclass
class RegulatorCandidate:
    node_id: str
    score: float  # V·Ω
    delta_v: float
    mean_voltage_v: float
    voltages: PhaseTriple
    zph_ohm: float
    position_ratio: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "score": round(self.score, 4),
            "delta_v": round(self.delta_v, 3),
            "mean_voltage_v": round(self.mean_voltage_v, 3),
            "voltages_v": self.voltages.to_dict(3),
            "zph_ohm": round(self.zph_ohm, 4),
            "position_pct": round(self.position_ratio * 100.0, 1),
        }


CandidateT = TypeVar("CandidateT", CompensatorCandidate, RegulatorCandidate)


@dataclass
class PlacementAnalysis(Generic[CandidateT]):
    """Ranked candidates, best first, and the impedance window applied."""
    total_zph_ohm: float
    min_zph_ohm: float
    max_zph_ohm: float
    candidates: list[CandidateT] = field(default_factory=list)
    reason: str = ""

    @property
    def best(self) -> CandidateT | None:
        return self.candidates[0] if self.candidates else None

    def to_dict(self) -> dict[str, Any]:
        best = self.best
        return {
            "best": best.to_dict() if best else None,
            "candidates": [c.to_dict() for c in self.candidates],
            "total_zph_ohm": round(self.total_zph_ohm, 4),
            "impedance_bounds_ohm": {
                "min": round(self.min_zph_ohm, 4),
                "max": round(self.max_zph_ohm, 4),
            },
            "reason": self.reason,
        }


def _candidate_nodes(network: NetworkModel) -> list[str]:
    """Reachable nodes other than the source, in feeder order."""
    return [n for n in network.order if n != network.source_id]


def feeder_impedance(network: NetworkModel) -> float:
    """Largest source-to-node phase impedance of the feeder (Ω)."""
    return max(
        (network.path_impedance(n)[0] for n in _candidate_nodes(network)),
        default=0.0,
    )


def _window(network: NetworkModel, min_ratio: float, max_ratio: float) -> tuple[float, float, float]:
    if not 0.0 <= min_ratio < max_ratio:
        raise ValueError(f"Invalid impedance window {min_ratio}..{max_ratio}")
    total = feeder_impedance(network)
    return total, total * min_ratio, total * max_ratio


def find_optimal_compensator_node(
    network: NetworkModel,
    result: CalculationResult,
    *,
    min_ratio: float = COMPENSATOR_MIN_RATIO,
    max_ratio: float = COMPENSATOR_MAX_RATIO,
    min_neutral_current_a: float = MIN_NEUTRAL_CURRENT_A,
) -> PlacementAnalysis[CompensatorCandidate]:
    """Rank EQUI8 installation nodes of a base calculation.

    The neutral current of a node is the one returning through its feeding
    cable. Nodes carrying less than ``min_neutral_current_a`` have no
    imbalance worth compensating and are skipped.
    """
    total, z_min, z_max = _window(network, min_ratio, max_ratio)
    analysis: PlacementAnalysis[CompensatorCandidate] = PlacementAnalysis(total, z_min, z_max)
    if total < MIN_IMPEDANCE_OHM:
        analysis.reason = "Feeder impedance too small to rank nodes"
        return analysis

    for node_id in _candidate_nodes(network):
        zph, zn = network.path_impedance(node_id)
        if not z_min <= zph <= z_max:
            logger.debug("Node %s outside impedance window (%.4f Ω)", node_id, zph)
            continue
        cable = result.cable_currents.get(network.upstream[node_id].cable_id)
        if cable is None:
            continue
        neutral = cable.neutral_current_a
        if neutral < min_neutral_current_a:
            logger.debug("Node %s neutral current %.2f A below threshold", node_id, neutral)
            continue
        analysis.candidates.append(
            CompensatorCandidate(
                node_id=node_id,
                score=neutral / max(zph, MIN_IMPEDANCE_OHM),
                neutral_current_a=neutral,
                zph_ohm=zph,
                zn_ohm=zn,
                position_ratio=zph / total,
            )
        )

    analysis.candidates.sort(key=lambda c: c.score, reverse=True)
    if analysis.best is None:
        analysis.reason = (
            f"No node carries more than {min_neutral_current_a:g} A of neutral current "
            f"within {z_min:.4f}..{z_max:.4f} Ω"
        )
    else:
        logger.info(
            "Best compensator node %s: score %.2f, I_N %.1f A",
            analysis.best.node_id, analysis.best.score, analysis.best.neutral_current_a,
            extra={"node_id": analysis.best.node_id, "current_a": analysis.best.neutral_current_a},
        )
    return analysis


def find_optimal_regulator_node(
    network: NetworkModel,
    result: CalculationResult,
    *,
    min_ratio: float = REGULATOR_MIN_RATIO,
    max_ratio: float = REGULATOR_MAX_RATIO,
    max_delta_v: float = MAX_DELTA_V,
) -> PlacementAnalysis[RegulatorCandidate]:
    """Rank SRG2 measurement nodes of a base calculation.

    ``ΔU`` is the spread between the highest and lowest phase voltage of a
    node; nodes above ``max_delta_v`` are too unbalanced to measure on.
    """
    total, z_min, z_max = _window(network, min_ratio, max_ratio)
    analysis: PlacementAnalysis[RegulatorCandidate] = PlacementAnalysis(total, z_min, z_max)
    if total < MIN_IMPEDANCE_OHM:
        analysis.reason = "Feeder impedance too small to rank nodes"
        return analysis

    for node_id in _candidate_nodes(network):
        zph, _ = network.path_impedance(node_id)
        if not z_min <= zph <= z_max:
            logger.debug("Node %s outside impedance window (%.4f Ω)", node_id, zph)
            continue
        node = result.node_voltages.get(node_id)
        if node is None:
            continue
        delta = node.voltages.spread()
        if delta > max_delta_v:
            logger.debug("Node %s too unbalanced (ΔU %.1f V)", node_id, delta)
            continue
        analysis.candidates.append(
            RegulatorCandidate(
                node_id=node_id,
                score=delta * zph,
                delta_v=delta,
                mean_voltage_v=node.voltages.mean(),
                voltages=node.voltages,
                zph_ohm=zph,
                position_ratio=zph / total,
            )
        )

    analysis.candidates.sort(key=lambda c: c.score)
    if analysis.best is None:
        analysis.reason = (
            f"No node with ΔU below {max_delta_v:g} V within {z_min:.4f}..{z_max:.4f} Ω"
        )
    else:
        logger.info(
            "Best regulator node %s: score %.3f, ΔU %.1f V",
            analysis.best.node_id, analysis.best.score, analysis.best.delta_v,
            extra={"node_id": analysis.best.node_id},
        )
    return analysis
