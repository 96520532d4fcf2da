"""Shared test fixtures for feederflow engine tests."""

from __future__ import annotations

from typing import Callable

import pytest

from feederflow.engine.network import CABLE_LIBRARY
from feederflow.schemas.network import (
    Cable,
    CableType,
    LoadModel,
    NetworkNode,
    PhaseBalance,
    PowerItem,
    Project,
    TransformerConfig,
)

FeederFactory = Callable[..., Project]


# ======================================================================
# Cable types
# ======================================================================

AL_95 = CableType(
    id="al_95",
    label="Al 4×95mm²",
    r_phase_ohm_per_km=0.32,
    x_phase_ohm_per_km=0.08,
    r_neutral_ohm_per_km=0.32,
    x_neutral_ohm_per_km=0.08,
)

AL_240 = CableType(
    id="al_240",
    label="Al 4×240mm²",
    r_phase_ohm_per_km=0.125,
    x_phase_ohm_per_km=0.075,
    r_neutral_ohm_per_km=0.125,
    x_neutral_ohm_per_km=0.075,
)


# ======================================================================
# Feeder builders
# ======================================================================

def build_feeder(
    loads: dict[str, float] | None = None,
    productions: dict[str, float] | None = None,
    *,
    lengths_m: tuple[float, float, float] = (20.0, 300.0, 100.0),
    load_model: LoadModel = LoadModel.BALANCED,
    charges_balance: PhaseBalance | None = None,
    node_balances: dict[str, PhaseBalance] | None = None,
    transformer: TransformerConfig | None = None,
    source_voltage_v: float = 230.0,
    load_factor_pct: float = 100.0,
    type_id: str = "al_95",
) -> Project:
    """Radial feeder src → n1 → n2 → n3.

    ``loads`` / ``productions`` map node id to kVA. ``type_id`` picks the
    cable type, either Al 95 / Al 240 or any catalog entry.
    """
    loads = loads or {}
    productions = productions or {}
    node_balances = node_balances or {}

    nodes = [NetworkNode(id="src", name="Source", is_source=True, target_voltage_v=source_voltage_v)]
    for node_id in ("n1", "n2", "n3"):
        nodes.append(NetworkNode(
            id=node_id,
            name=node_id.upper(),
            loads=[PowerItem(id=f"{node_id}-load", s_kva=loads[node_id])] if node_id in loads else [],
            productions=(
                [PowerItem(id=f"{node_id}-pv", s_kva=productions[node_id])] if node_id in productions else []
            ),
            charges_balance=node_balances.get(node_id),
        ))

    chain = ("src", "n1", "n2", "n3")
    cables = [
        Cable(id=f"c{i + 1}", node_a_id=chain[i], node_b_id=chain[i + 1], type_id=type_id, length_m=length)
        for i, length in enumerate(lengths_m)
    ]

    return Project(
        name="test feeder",
        nodes=nodes,
        cables=cables,
        cable_types=[AL_95, AL_240, *CABLE_LIBRARY],
        transformer=transformer,
        load_model=load_model,
        charges_balance=charges_balance or PhaseBalance(),
        load_factor_pct=load_factor_pct,
    )


@pytest.fixture
def feeder_factory() -> FeederFactory:
    return build_feeder


@pytest.fixture
def balanced_feeder() -> Project:
    """Balanced consumption pulling n2 into the BO1 band (≈217 V)."""
    return build_feeder(loads={"n2": 20.0, "n3": 60.0})


@pytest.fixture
def unbalanced_feeder() -> Project:
    """Phase A carries 60 % of the n2 load; n3 load is balanced."""
    return build_feeder(
        loads={"n2": 30.0, "n3": 10.0},
        load_model=LoadModel.DISTRIBUTED,
        charges_balance=PhaseBalance(A=60.0, B=20.0, C=20.0),
        node_balances={"n3": PhaseBalance()},
    )


@pytest.fixture
def overhead_feeder() -> Project:
    """Unbalanced n2 load on twisted overhead line with a reduced neutral.

    Upstream phase impedance: n1 0.032 Ω, n2 0.064 Ω, n3 0.160 Ω.
    """
    return build_feeder(
        loads={"n2": 30.0, "n3": 10.0},
        lengths_m=(100.0, 100.0, 300.0),
        load_model=LoadModel.DISTRIBUTED,
        charges_balance=PhaseBalance(A=60.0, B=20.0, C=20.0),
        node_balances={"n3": PhaseBalance()},
        type_id="baxb_3x95_54",
    )
