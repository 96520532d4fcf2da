"""Neutral shunt compensator (EQUI8) using the CME empirical model.

The closed-form model estimates, from the natural phase voltages at the
installation node and the upstream phase/neutral impedances, how far the
device can close the phase voltage spread and how much neutral current it
needs to do so:

    factor      = 2·Zph / (Zph + Zn)
    ΔU_target   = ΔU_init · factor / (0.9119·ln(Zph) + 3.8654)
    U*_p        = U_mean + (U_p − U_mean)/ΔU_init · ΔU_target
    I_estimate  = 0.392 · Zph^−0.8065 · ΔU_init · factor

The estimate only seeds a calibration loop: the injected current is
refined with damped secant steps against the real network response until
the achieved spread matches ΔU_target, bounded by the thermal ceiling of
the device's time window.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Sequence

from feederflow.config import Settings, settings as default_settings
from feederflow.engine.network.complex_math import ComplexNumber, phasor_sum
from feederflow.engine.network.phase_distribution import PhaseTriple
from feederflow.engine.network.power_flow import NodeInjection
from feederflow.schemas.equipment import CompensatorConfig

logger = logging.getLogger(__name__)

CME_LOG_SLOPE = 0.9119
CME_LOG_INTERCEPT = 3.8654
CME_CURRENT_COEFFICIENT = 0.392
CME_CURRENT_EXPONENT = -0.8065

# Device counts as thermally limited from this fraction of its ceiling
THERMAL_SATURATION_RATIO = 0.99
# Sum of phase projections below which the split is degenerate (A)
DEGENERATE_WEIGHT_A = 0.1
MIN_START_CURRENT_A = 1.0


# ======================================================================
# CME closed form
# ======================================================================

@dataclass
class CmeEstimate:
    """Closed-form targets for one compensator."""
    initial_voltages: PhaseTriple
    mean_voltage_v: float
    initial_spread_v: float
    target_spread_v: float
    ratios: PhaseTriple
    target_voltages: PhaseTriple
    estimated_current_a: float
    zph_ohm: float
    zn_ohm: float
    impedance_clamped: bool
    active: bool

    @property
    def target_reduction_pct(self) -> float:
        if self.initial_spread_v <= 0:
            return 0.0
        return (self.initial_spread_v - self.target_spread_v) / self.initial_spread_v * 100.0


def clamp_impedance(value: float, floor: float) -> tuple[float, bool]:
    """Raise an impedance to the minimum operating value. Returns (value, clamped)."""
    if value < floor:
        return floor, True
    return value, False


def compute_cme_targets(
    voltages: PhaseTriple,
    zph_ohm: float,
    zn_ohm: float,
    *,
    impedance_floor_ohm: float = 0.15,
    min_spread_v: float = 0.5,
) -> CmeEstimate:
    """Estimate target voltages and injection current from natural voltages.

    Below ``min_spread_v`` the device stays idle: targets equal the natural
    voltages and the estimated current is zero.
    """
    zph, zph_clamped = clamp_impedance(zph_ohm, impedance_floor_ohm)
    zn, zn_clamped = clamp_impedance(zn_ohm, impedance_floor_ohm)
    mean = voltages.mean()
    spread = voltages.spread()

    if spread < min_spread_v:
        return CmeEstimate(
            initial_voltages=voltages,
            mean_voltage_v=mean,
            initial_spread_v=spread,
            target_spread_v=spread,
            ratios=PhaseTriple(),
            target_voltages=voltages,
            estimated_current_a=0.0,
            zph_ohm=zph,
            zn_ohm=zn,
            impedance_clamped=zph_clamped or zn_clamped,
            active=False,
        )

    factor = 2.0 * zph / (zph + zn)
    attenuation = CME_LOG_SLOPE * math.log(zph) + CME_LOG_INTERCEPT
    target_spread = min(spread, spread * factor / attenuation)
    ratios = PhaseTriple.from_iterable((v - mean) / spread for v in voltages.values())
    targets = PhaseTriple.from_iterable(mean + r * target_spread for r in ratios.values())
    current = CME_CURRENT_COEFFICIENT * zph ** CME_CURRENT_EXPONENT * spread * factor

    return CmeEstimate(
        initial_voltages=voltages,
        mean_voltage_v=mean,
        initial_spread_v=spread,
        target_spread_v=target_spread,
        ratios=ratios,
        target_voltages=targets,
        estimated_current_a=current,
        zph_ohm=zph,
        zn_ohm=zn,
        impedance_clamped=zph_clamped or zn_clamped,
        active=True,
    )


# ======================================================================
# Thermal limits and secant update
# ======================================================================

def per_phase_current_limit(config: CompensatorConfig, nominal_phase_voltage_v: float = 230.0) -> float:
    """Current ceiling: thermal window or apparent power rating, whichever is lower."""
    power_limit = config.max_power_kva * 1000.0 / (3.0 * nominal_phase_voltage_v)
    return min(config.thermal_limit_a, power_limit)


def clamp_by_thermal_limit(current_a: float, limit_a: float) -> tuple[float, bool]:
    """Bound a current to [0, limit]. Returns (current, thermally limited)."""
    clamped = max(0.0, min(current_a, limit_a))
    return clamped, clamped >= THERMAL_SATURATION_RATIO * limit_a


def adjust_secant(
    current_a: float,
    achieved_spread_v: float,
    target_spread_v: float,
    previous_current_a: float | None,
    previous_spread_v: float | None,
    limit_a: float,
    *,
    damping: float = 0.7,
    max_step_ratio: float = 0.2,
) -> float:
    """Next injection current from the last two (current, spread) samples.

    Without a usable previous sample the step is proportional to the
    relative spread error. Steps are limited to ``max_step_ratio`` of the
    current, damped, and the result is bounded by [0, limit].
    """
    if (
        previous_current_a is None
        or previous_spread_v is None
        or abs(achieved_spread_v - previous_spread_v) < 1e-6
    ):
        ratio = achieved_spread_v / target_spread_v if target_spread_v > 0 else 1.0
        raw = current_a * (1.0 + (ratio - 1.0) * 0.5)
        damped = current_a + (raw - current_a) * damping
        return max(0.0, min(damped, limit_a))

    if abs(current_a - previous_current_a) < 1e-9:
        return max(0.0, min(current_a * 1.05, limit_a))
    slope = (achieved_spread_v - previous_spread_v) / (current_a - previous_current_a)
    if abs(slope) < 1e-6:
        return max(0.0, min(current_a * 1.05, limit_a))

    raw = current_a - (achieved_spread_v - target_spread_v) / slope
    max_delta = max(abs(current_a), MIN_START_CURRENT_A) * max_step_ratio
    delta = max(-max_delta, min(max_delta, raw - current_a))
    return max(0.0, min(current_a + delta * damping, limit_a))


# ======================================================================
# Per-phase decomposition
# ======================================================================

@dataclass
class InjectionSplit:
    """Per-phase currents carrying one requested neutral injection."""
    requested: ComplexNumber
    phase_currents: tuple[ComplexNumber, ComplexNumber, ComplexNumber]
    limited: bool = False
    fallback: bool = False

    @property
    def total(self) -> ComplexNumber:
        return phasor_sum(self.phase_currents)

    @property
    def relative_error(self) -> float:
        mag = self.requested.magnitude
        if mag == 0.0:
            return 0.0
        return (self.total - self.requested).magnitude / mag


def _redistribute(shares: list[float], cap: float) -> tuple[list[float], bool]:
    excess = sum(max(0.0, s - cap) for s in shares)
    if excess <= 0.0:
        return shares, False

    clamped = [min(s, cap) for s in shares]
    room = [cap - s for s in clamped]
    total_room = sum(room)
    if total_room <= excess:
        return [cap, cap, cap], True
    return [s + excess * r / total_room for s, r in zip(clamped, room)], False


def decompose_injection(
    injection: ComplexNumber,
    phase_currents: Sequence[ComplexNumber],
    max_phase_current_a: float,
) -> InjectionSplit:
    """Split a neutral injection into three parallel per-phase currents.

    Each phase takes a share proportional to the positive projection of its
    load current on the injection direction, so the sum is the requested
    phasor. Shares above ``max_phase_current_a`` spill onto the other
    phases; when no phase has room left the split saturates at the cap and
    is flagged ``limited``. Degenerate or non-finite projections give an
    even three-way split.
    """
    magnitude = injection.magnitude
    if magnitude == 0.0 or not injection.is_finite():
        zero = ComplexNumber()
        return InjectionSplit(requested=injection, phase_currents=(zero, zero, zero))

    direction = injection.normalize()
    weights = [
        max(0.0, current.dot(direction)) if current.is_finite() else 0.0
        for current in phase_currents
    ]
    total_weight = sum(weights)
    fallback = False
    if not math.isfinite(total_weight) or total_weight < DEGENERATE_WEIGHT_A:
        weights = [1.0, 1.0, 1.0]
        total_weight = 3.0
        fallback = True

    shares = [magnitude * w / total_weight for w in weights]
    shares, limited = _redistribute(shares, max_phase_current_a)
    a, b, c = (direction.scale(s) for s in shares)
    return InjectionSplit(requested=injection, phase_currents=(a, b, c), limited=limited, fallback=fallback)


def build_injection(
    current_a: float,
    direction: ComplexNumber,
    phase_currents: Sequence[ComplexNumber],
    limit_a: float,
) -> tuple[NodeInjection, InjectionSplit]:
    """Solver injection for a neutral current of ``current_a`` along ``direction``.

    The device draws the current from the neutral and returns it on the
    phases, so the injection is current-neutral at the node.
    """
    requested = direction.normalize().scale(current_a)
    split = decompose_injection(requested, phase_currents, limit_a)
    phases = tuple(complex(p) for p in split.phase_currents)
    injection = NodeInjection(
        phase_currents=(phases[0], phases[1], phases[2]),
        neutral_current=-sum(phases),
    )
    return injection, split


# ======================================================================
# Calibration loop
# ======================================================================

@dataclass
class CalibrationStep:
    iteration: int
    current_a: float
    spread_v: float
    residual_v: float


@dataclass
class CalibrationOutcome:
    """Last accepted iterate of a calibration run."""
    current_a: float
    injection: NodeInjection
    split: InjectionSplit
    voltages: PhaseTriple
    spread_v: float
    residual_v: float
    iterations: int
    converged: bool
    thermal_limited: bool
    history: list[CalibrationStep] = field(default_factory=list)


def calibrate_injection(
    estimate: CmeEstimate,
    evaluate: Callable[[NodeInjection], PhaseTriple],
    direction: ComplexNumber,
    phase_currents: Sequence[ComplexNumber],
    limit_a: float,
    *,
    start_current_a: float | None = None,
    settings: Settings | None = None,
) -> CalibrationOutcome:
    """Refine the injected current until the node spread reaches the target.

    Args:
        estimate: CME targets for the node
        evaluate: solves the network with a trial injection and returns the
            node's phase-to-neutral voltages
        direction: phasor direction of the natural neutral current
        phase_currents: natural phase currents feeding the node, used to
            split the injection
        limit_a: per-phase current ceiling
        start_current_a: seed instead of the CME estimate
    """
    cfg = settings or default_settings
    seed = estimate.estimated_current_a if start_current_a is None else start_current_a
    current, _ = clamp_by_thermal_limit(seed, limit_a)
    current = min(max(current, MIN_START_CURRENT_A), limit_a)

    history: list[CalibrationStep] = []
    previous_current: float | None = None
    previous_spread: float | None = None
    converged = False
    iteration = 0

    while True:
        iteration += 1
        injection, split = build_injection(current, direction, phase_currents, limit_a)
        voltages = evaluate(injection)
        spread = voltages.spread()
        residual = spread - estimate.target_spread_v
        history.append(CalibrationStep(iteration, current, spread, residual))
        outcome = CalibrationOutcome(
            current_a=current,
            injection=injection,
            split=split,
            voltages=voltages,
            spread_v=spread,
            residual_v=residual,
            iterations=iteration,
            converged=False,
            thermal_limited=bool(current >= THERMAL_SATURATION_RATIO * limit_a),
            history=history,
        )

        if abs(residual) <= cfg.calibration_tolerance_v:
            converged = True
            break
        if outcome.thermal_limited and residual > 0:
            logger.info(
                "Compensator at thermal ceiling %.1f A, residual %.2f V", limit_a, residual,
                extra={"current_a": current, "residual_v": residual},
            )
            break
        if iteration >= cfg.calibration_max_iterations:
            break

        next_current = adjust_secant(
            current, spread, estimate.target_spread_v,
            previous_current, previous_spread, limit_a,
            damping=cfg.secant_damping,
            max_step_ratio=cfg.secant_max_step_ratio,
        )
        if abs(next_current - current) < 1e-6:
            break
        previous_current, previous_spread = current, spread
        current = next_current

    outcome.converged = converged
    if not converged:
        logger.warning(
            "Compensator calibration stopped after %d iterations (residual %.2f V)",
            outcome.iterations, outcome.residual_v,
            extra={"iterations": outcome.iterations, "residual_v": outcome.residual_v},
        )
    return outcome
