"""Declarative feeder description consumed by the calculation engine.

Every model is frozen: the engine builds its own per-call working state
from these inputs and never writes back into them.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator


class Phase(str, Enum):
    A = "A"
    B = "B"
    C = "C"


PHASES: tuple[Phase, Phase, Phase] = (Phase.A, Phase.B, Phase.C)


class ConnectionType(str, Enum):
    MONO = "MONO"
    TRI = "TRI"
    TETRA = "TETRA"


class ManualLoadType(str, Enum):
    MONO = "MONO"
    POLY = "POLY"


class LoadModel(str, Enum):
    BALANCED = "balanced"
    DISTRIBUTED = "distributed"
    MIXED = "mixed"


class BalanceScope(str, Enum):
    MONO_ONLY = "mono_only"
    ALL_CLIENTS = "all_clients"


class CalculationScenario(str, Enum):
    CONSUMPTION = "consumption"
    PRODUCTION = "production"
    MIXED = "mixed"


class PhaseBalance(BaseModel):
    """Per-phase share of a quantity, in percent."""
    model_config = {"frozen": True}

    A: float = Field(default=100.0 / 3, ge=0, le=100)
    B: float = Field(default=100.0 / 3, ge=0, le=100)
    C: float = Field(default=100.0 / 3, ge=0, le=100)

    @model_validator(mode="after")
    def _sums_to_hundred(self) -> PhaseBalance:
        total = self.A + self.B + self.C
        if abs(total - 100.0) > 0.5:
            raise ValueError(f"phase percentages must sum to 100, got {total:.2f}")
        return self

    def fractions(self) -> tuple[float, float, float]:
        total = self.A + self.B + self.C
        return (self.A / total, self.B / total, self.C / total)


class CableType(BaseModel):
    """Per-kilometre conductor impedances of a cable construction."""
    model_config = {"frozen": True}

    id: str
    label: str = ""
    r_phase_ohm_per_km: float = Field(gt=0)
    x_phase_ohm_per_km: float = Field(default=0.08, ge=0)
    r_neutral_ohm_per_km: float = Field(gt=0)
    x_neutral_ohm_per_km: float = Field(default=0.08, ge=0)
    material: str = Field(default="AL", pattern="^(CU|AL)$")
    ampacity_a: float | None = None


class PowerItem(BaseModel):
    """A lumped load or production declared on a node."""
    model_config = {"frozen": True}

    id: str
    label: str = ""
    s_kva: float = Field(ge=0)


class NetworkNode(BaseModel):
    model_config = {"frozen": True}

    id: str
    name: str = ""
    is_source: bool = False
    target_voltage_v: float | None = Field(default=None, gt=0)
    loads: list[PowerItem] = Field(default_factory=list)
    productions: list[PowerItem] = Field(default_factory=list)
    manual_load_type: ManualLoadType = ManualLoadType.POLY
    # Node-level overrides of the project balancing vectors
    charges_balance: PhaseBalance | None = None
    productions_balance: PhaseBalance | None = None

    @property
    def load_kva(self) -> float:
        return sum(item.s_kva for item in self.loads)

    @property
    def production_kva(self) -> float:
        return sum(item.s_kva for item in self.productions)


class Cable(BaseModel):
    model_config = {"frozen": True}

    id: str
    name: str = ""
    node_a_id: str
    node_b_id: str
    type_id: str
    length_m: float = Field(gt=0)

    @model_validator(mode="after")
    def _distinct_ends(self) -> Cable:
        if self.node_a_id == self.node_b_id:
            raise ValueError(f"cable {self.id} connects node {self.node_a_id} to itself")
        return self


class ClientRecord(BaseModel):
    """A metered customer connection with contractual load and PV power."""
    model_config = {"frozen": True}

    id: str
    name: str = ""
    contract_kva: float = Field(default=0.0, ge=0)
    pv_kva: float = Field(default=0.0, ge=0)
    connection_type: ConnectionType = ConnectionType.MONO
    assigned_phase: Phase | None = None


class ClientLink(BaseModel):
    model_config = {"frozen": True}

    client_id: str
    node_id: str


class TransformerConfig(BaseModel):
    """MV/LV distribution transformer feeding the source node."""
    model_config = {"frozen": True}

    nominal_power_kva: float = Field(default=250.0, gt=0)
    short_circuit_voltage_pct: float = Field(default=4.0, gt=0, lt=100)
    x_over_r: float = Field(default=3.0, ge=0)
    nominal_voltage_v: float = Field(default=400.0, gt=0)

    def source_impedance_ohm(self) -> complex:
        """Per-phase short-circuit impedance referred to the LV side.

        Zsc = (ucc/100) · U² / S, split into R and X with the X/R ratio.
        """
        z_mag = (self.short_circuit_voltage_pct / 100.0) * self.nominal_voltage_v ** 2 / (
            self.nominal_power_kva * 1000.0
        )
        r = z_mag / (1.0 + self.x_over_r ** 2) ** 0.5
        return complex(r, r * self.x_over_r)


class Project(BaseModel):
    """Complete feeder description for one calculation."""
    model_config = {"frozen": True}

    name: str = ""
    nodes: list[NetworkNode]
    cables: list[Cable] = Field(default_factory=list)
    cable_types: list[CableType] = Field(default_factory=list)
    transformer: TransformerConfig | None = None
    load_model: LoadModel = LoadModel.BALANCED
    charges_balance: PhaseBalance = Field(default_factory=PhaseBalance)
    productions_balance: PhaseBalance = Field(default_factory=PhaseBalance)
    balance_scope: BalanceScope = BalanceScope.MONO_ONLY
    # Demand / coincidence scaling, in percent of declared power
    load_factor_pct: float = Field(default=100.0, ge=0, le=100)
    production_factor_pct: float = Field(default=100.0, ge=0, le=100)
    cos_phi: float = Field(default=0.95, gt=0, le=1)
    clients: list[ClientRecord] = Field(default_factory=list)
    client_links: list[ClientLink] = Field(default_factory=list)

    @field_validator("nodes")
    @classmethod
    def _single_source(cls, nodes: list[NetworkNode]) -> list[NetworkNode]:
        sources = [n.id for n in nodes if n.is_source]
        if len(sources) != 1:
            raise ValueError(f"exactly one source node is required, found {len(sources)}")
        return nodes

    @model_validator(mode="after")
    def _check_references(self) -> Project:
        node_ids = [n.id for n in self.nodes]
        if len(set(node_ids)) != len(node_ids):
            raise ValueError("duplicate node id")
        cable_ids = [c.id for c in self.cables]
        if len(set(cable_ids)) != len(cable_ids):
            raise ValueError("duplicate cable id")

        known_nodes = set(node_ids)
        known_types = {t.id for t in self.cable_types}
        for cable in self.cables:
            for end in (cable.node_a_id, cable.node_b_id):
                if end not in known_nodes:
                    raise ValueError(f"cable {cable.id} references unknown node {end}")
            if cable.type_id not in known_types:
                raise ValueError(f"cable {cable.id} references unknown cable type {cable.type_id}")

        known_clients = {c.id for c in self.clients}
        if len(known_clients) != len(self.clients):
            raise ValueError("duplicate client id")
        for link in self.client_links:
            if link.client_id not in known_clients:
                raise ValueError(f"link references unknown client {link.client_id}")
            if link.node_id not in known_nodes:
                raise ValueError(f"link references unknown node {link.node_id}")
        return self

    @property
    def source(self) -> NetworkNode:
        return next(n for n in self.nodes if n.is_source)
