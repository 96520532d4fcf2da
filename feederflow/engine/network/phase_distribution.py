"""Per-phase distribution of client and node power.

Single-phase (MONO) clients sit on one phase; polyphase clients (TRI,
TETRA) are split over the three phases. A node's per-phase totals feed the
sweep solver when the project uses the distributed or mixed load models.

Phase assignment for MONO clients without a declared phase picks the phase
with the least combined (contract + PV) power. Ties resolve to the lowest
phase label unless the caller passes a seeded ``numpy.random.Generator``.
"""

from __future__ import annotations

import logging
import unicodedata
from dataclasses import dataclass, field
from typing import Iterable, Sequence

import numpy as np
from numpy.typing import NDArray

from feederflow.schemas.network import (
    PHASES,
    BalanceScope,
    ClientRecord,
    ConnectionType,
    ManualLoadType,
    Phase,
    PhaseBalance,
)

logger = logging.getLogger(__name__)

UNBALANCE_WARNING_PCT = 10.0
UNBALANCE_CRITICAL_PCT = 20.0


@dataclass
class PhaseTriple:
    """One float per phase."""
    A: float = 0.0
    B: float = 0.0
    C: float = 0.0

    @classmethod
    def from_iterable(cls, values: Iterable[float]) -> PhaseTriple:
        a, b, c = (float(v) for v in values)
        return cls(a, b, c)

    @classmethod
    def uniform(cls, value: float) -> PhaseTriple:
        return cls(value, value, value)

    def __getitem__(self, phase: Phase | str) -> float:
        return getattr(self, Phase(phase).value)

    def as_array(self) -> NDArray[np.float64]:
        return np.array([self.A, self.B, self.C], dtype=np.float64)

    def values(self) -> tuple[float, float, float]:
        return (self.A, self.B, self.C)

    def total(self) -> float:
        return self.A + self.B + self.C

    def mean(self) -> float:
        return self.total() / 3.0

    def spread(self) -> float:
        """Max minus min across phases."""
        return max(self.values()) - min(self.values())

    def scaled(self, factor: float) -> PhaseTriple:
        return PhaseTriple(self.A * factor, self.B * factor, self.C * factor)

    def __add__(self, other: PhaseTriple) -> PhaseTriple:
        return PhaseTriple(self.A + other.A, self.B + other.B, self.C + other.C)

    def to_dict(self, digits: int | None = None) -> dict[str, float]:
        if digits is None:
            return {"A": self.A, "B": self.B, "C": self.C}
        return {"A": round(self.A, digits), "B": round(self.B, digits), "C": round(self.C, digits)}


def _split(total: float, fractions: Sequence[float]) -> PhaseTriple:
    return PhaseTriple.from_iterable(total * f for f in fractions)


_EVEN = (1.0 / 3, 1.0 / 3, 1.0 / 3)


# ======================================================================
# Connection types
# ======================================================================

def _fold(raw: str) -> str:
    decomposed = unicodedata.normalize("NFKD", raw)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).strip().upper()


def normalize_connection_type(raw: str | ConnectionType | None) -> ConnectionType:
    """Map free-form connection labels from client imports to a ConnectionType.

    Empty, unknown ('?') and MONO-like labels map to MONO; 'TRI' / 'TRIPHASÉ'
    to TRI; 'TÉTRA' / 'TÉTRAPHASÉ' to TETRA. Anything else falls back to MONO
    with a warning.
    """
    if isinstance(raw, ConnectionType):
        return raw
    if raw is None:
        return ConnectionType.MONO

    label = _fold(raw)
    if label in ("", "?", "MONO", "MONOPHASE"):
        return ConnectionType.MONO
    if label in ("TRI", "TRIPHASE"):
        return ConnectionType.TRI
    if label in ("TETRA", "TETRAPHASE"):
        return ConnectionType.TETRA

    logger.warning("Unknown connection type %r, treating client as MONO", raw)
    return ConnectionType.MONO


# ======================================================================
# MONO phase assignment
# ======================================================================

def client_power_kva(client: ClientRecord) -> float:
    """Combined load and production power used to balance phases."""
    return client.contract_kva + client.pv_kva


def phase_loading(
    clients: Iterable[ClientRecord],
    assignments: dict[str, Phase],
) -> PhaseTriple:
    """Combined power already carried by each phase from MONO clients."""
    loading = {p: 0.0 for p in PHASES}
    for client in clients:
        if client.connection_type != ConnectionType.MONO:
            continue
        phase = assignments.get(client.id, client.assigned_phase)
        if phase is None:
            continue
        loading[phase] += client_power_kva(client)
    return PhaseTriple(loading[Phase.A], loading[Phase.B], loading[Phase.C])


def auto_assign_phase(
    client: ClientRecord,
    assigned_clients: Iterable[ClientRecord],
    assignments: dict[str, Phase] | None = None,
    rng: np.random.Generator | None = None,
) -> Phase:
    """Pick the least-loaded phase for a MONO client.

    Parameters
    ----------
    client : ClientRecord
        Client to place. Its declared phase, if any, is returned as-is.
    assigned_clients : iterable of ClientRecord
        Clients already on the feeder; only MONO clients with a phase count.
    assignments : dict, optional
        Phase overrides for clients whose record carries none.
    rng : numpy.random.Generator, optional
        Breaks ties randomly when given. Without it the lowest phase label
        wins, so repeated runs are identical.
    """
    if client.assigned_phase is not None:
        return client.assigned_phase

    loading = phase_loading(assigned_clients, assignments or {})
    lowest = min(loading.values())
    candidates = [p for p in PHASES if loading[p] - lowest < 1e-9]

    if rng is not None and len(candidates) > 1:
        return candidates[int(rng.integers(len(candidates)))]
    return candidates[0]


def assign_missing_phases(
    clients: Sequence[ClientRecord],
    rng: np.random.Generator | None = None,
) -> dict[str, Phase]:
    """Resolve a phase for every MONO client, in declaration order.

    Clients with a declared phase keep it and are counted first, so that the
    auto-assigned ones balance against the fixed ones.
    """
    assignments: dict[str, Phase] = {}
    for client in clients:
        if client.connection_type == ConnectionType.MONO and client.assigned_phase is not None:
            assignments[client.id] = client.assigned_phase

    placed = [c for c in clients if c.id in assignments]
    for client in clients:
        if client.connection_type != ConnectionType.MONO or client.id in assignments:
            continue
        phase = auto_assign_phase(client, placed, assignments, rng)
        assignments[client.id] = phase
        placed.append(client)
    return assignments


def mono_distribution_percents(
    clients: Iterable[ClientRecord],
    assignments: dict[str, Phase],
    production: bool = False,
) -> PhaseTriple:
    """Real share of MONO power per phase, in percent.

    Returns a balanced 33.33 / 33.33 / 33.34 when there is no MONO power.
    """
    totals = {p: 0.0 for p in PHASES}
    for client in clients:
        if client.connection_type != ConnectionType.MONO:
            continue
        phase = assignments.get(client.id, client.assigned_phase)
        if phase is None:
            continue
        totals[phase] += client.pv_kva if production else client.contract_kva

    grand = sum(totals.values())
    if grand <= 0:
        return PhaseTriple(33.33, 33.33, 33.34)
    return PhaseTriple(*(totals[p] / grand * 100.0 for p in PHASES))


# ======================================================================
# Node distribution
# ======================================================================

@dataclass
class NodePhaseDistribution:
    """Per-phase power at one node, in kVA."""
    charges_mono: PhaseTriple = field(default_factory=PhaseTriple)
    charges_poly: PhaseTriple = field(default_factory=PhaseTriple)
    productions_mono: PhaseTriple = field(default_factory=PhaseTriple)
    productions_poly: PhaseTriple = field(default_factory=PhaseTriple)
    mono_clients: dict[str, int] = field(default_factory=lambda: {p.value: 0 for p in PHASES})
    poly_clients: int = 0

    @property
    def charges_total(self) -> PhaseTriple:
        return self.charges_mono + self.charges_poly

    @property
    def productions_total(self) -> PhaseTriple:
        return self.productions_mono + self.productions_poly

    @property
    def unbalance_pct(self) -> float:
        return unbalance_percent(self.charges_total)

    def to_dict(self) -> dict:
        return {
            "charges": {
                "mono": self.charges_mono.to_dict(3),
                "poly": self.charges_poly.to_dict(3),
                "total": self.charges_total.to_dict(3),
            },
            "productions": {
                "mono": self.productions_mono.to_dict(3),
                "poly": self.productions_poly.to_dict(3),
                "total": self.productions_total.to_dict(3),
            },
            "mono_clients": dict(self.mono_clients),
            "poly_clients": self.poly_clients,
            "unbalance_pct": round(self.unbalance_pct, 2),
        }


def unbalance_percent(values: PhaseTriple) -> float:
    """Largest relative deviation from the three-phase mean, in percent."""
    mean = values.mean()
    if mean <= 0:
        return 0.0
    return max(abs(v - mean) / mean for v in values.values()) * 100.0


def calculate_node_phase_distribution(
    clients: Sequence[ClientRecord],
    assignments: dict[str, Phase],
    *,
    manual_charges_kva: float = 0.0,
    manual_productions_kva: float = 0.0,
    manual_load_type: ManualLoadType = ManualLoadType.POLY,
    charges_balance: PhaseBalance | None = None,
    productions_balance: PhaseBalance | None = None,
    balance_scope: BalanceScope = BalanceScope.MONO_ONLY,
) -> NodePhaseDistribution:
    """Aggregate a node's clients and manual power into per-phase totals.

    MONO clients land on their assigned phase. When a balancing vector is
    given, the MONO totals are redistributed along it instead; with
    ``BalanceScope.ALL_CLIENTS`` the polyphase totals follow it too,
    otherwise they split equally. Manual node power declared as MONO follows
    the balancing vector, or the node's real MONO split when there is none.
    """
    dist = NodePhaseDistribution()
    mono_load = {p: 0.0 for p in PHASES}
    mono_prod = {p: 0.0 for p in PHASES}
    poly_load = 0.0
    poly_prod = 0.0

    for client in clients:
        if client.connection_type == ConnectionType.MONO:
            phase = assignments.get(client.id, client.assigned_phase) or Phase.A
            mono_load[phase] += client.contract_kva
            mono_prod[phase] += client.pv_kva
            dist.mono_clients[phase.value] += 1
        else:
            poly_load += client.contract_kva
            poly_prod += client.pv_kva
            dist.poly_clients += 1

    if charges_balance is not None:
        dist.charges_mono = _split(sum(mono_load.values()), charges_balance.fractions())
    else:
        dist.charges_mono = PhaseTriple(*(mono_load[p] for p in PHASES))
    if productions_balance is not None:
        dist.productions_mono = _split(sum(mono_prod.values()), productions_balance.fractions())
    else:
        dist.productions_mono = PhaseTriple(*(mono_prod[p] for p in PHASES))

    spread_all = balance_scope == BalanceScope.ALL_CLIENTS
    load_fractions = charges_balance.fractions() if spread_all and charges_balance else _EVEN
    prod_fractions = productions_balance.fractions() if spread_all and productions_balance else _EVEN
    dist.charges_poly = _split(poly_load, load_fractions)
    dist.productions_poly = _split(poly_prod, prod_fractions)

    if manual_charges_kva or manual_productions_kva:
        if manual_load_type == ManualLoadType.MONO:
            if charges_balance is not None:
                manual_load_f = charges_balance.fractions()
            else:
                manual_load_f = tuple(
                    v / 100.0 for v in mono_distribution_percents(clients, assignments).values()
                )
            if productions_balance is not None:
                manual_prod_f = productions_balance.fractions()
            else:
                manual_prod_f = tuple(
                    v / 100.0
                    for v in mono_distribution_percents(clients, assignments, production=True).values()
                )
            dist.charges_mono = dist.charges_mono + _split(manual_charges_kva, manual_load_f)
            dist.productions_mono = dist.productions_mono + _split(manual_productions_kva, manual_prod_f)
        else:
            dist.charges_poly = dist.charges_poly + _split(manual_charges_kva, _EVEN)
            dist.productions_poly = dist.productions_poly + _split(manual_productions_kva, _EVEN)

    return dist


# ======================================================================
# Project-level unbalance
# ======================================================================

@dataclass
class ProjectUnbalance:
    charges: PhaseTriple
    productions: PhaseTriple
    unbalance_pct: float
    status: str  # normal, warning, critical

    def to_dict(self) -> dict:
        return {
            "charges": self.charges.to_dict(3),
            "productions": self.productions.to_dict(3),
            "unbalance_pct": round(self.unbalance_pct, 2),
            "status": self.status,
        }


def project_unbalance(distributions: Iterable[NodePhaseDistribution]) -> ProjectUnbalance:
    """Sum node distributions and grade the resulting charge unbalance."""
    charges = PhaseTriple()
    productions = PhaseTriple()
    for dist in distributions:
        charges = charges + dist.charges_total
        productions = productions + dist.productions_total

    pct = unbalance_percent(charges)
    if pct >= UNBALANCE_CRITICAL_PCT:
        status = "critical"
    elif pct >= UNBALANCE_WARNING_PCT:
        status = "warning"
    else:
        status = "normal"
    return ProjectUnbalance(charges=charges, productions=productions, unbalance_pct=pct, status=status)
