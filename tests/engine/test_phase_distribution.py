"""Tests for engine.network.phase_distribution."""

from __future__ import annotations

import logging

import numpy as np
import pytest

from feederflow.engine.network.phase_distribution import (
    NodePhaseDistribution,
    PhaseTriple,
    assign_missing_phases,
    auto_assign_phase,
    calculate_node_phase_distribution,
    mono_distribution_percents,
    normalize_connection_type,
    project_unbalance,
    unbalance_percent,
)
from feederflow.schemas.network import (
    BalanceScope,
    ClientRecord,
    ConnectionType,
    ManualLoadType,
    Phase,
    PhaseBalance,
)


def _mono(client_id: str, kva: float, phase: Phase | None = None, pv: float = 0.0) -> ClientRecord:
    return ClientRecord(id=client_id, contract_kva=kva, pv_kva=pv, assigned_phase=phase)


def _tri(client_id: str, kva: float, pv: float = 0.0) -> ClientRecord:
    return ClientRecord(id=client_id, contract_kva=kva, pv_kva=pv, connection_type=ConnectionType.TRI)


# ======================================================================
# Connection types
# ======================================================================

class TestNormalizeConnectionType:
    @pytest.mark.parametrize("raw", ["MONO", "mono", "Monophasé", "?", "", None])
    def test_mono_labels(self, raw):
        assert normalize_connection_type(raw) == ConnectionType.MONO

    @pytest.mark.parametrize("raw", ["TRI", "tri", "TRIPHASÉ", "Triphase"])
    def test_tri_labels(self, raw):
        assert normalize_connection_type(raw) == ConnectionType.TRI

    @pytest.mark.parametrize("raw", ["TETRA", "TÉTRA", "tétraphasé", "TETRAPHASE"])
    def test_tetra_labels(self, raw):
        assert normalize_connection_type(raw) == ConnectionType.TETRA

    def test_unknown_falls_back_to_mono_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING):
            assert normalize_connection_type("BIPHASE") == ConnectionType.MONO
        assert "Unknown connection type" in caplog.text

    def test_enum_passthrough(self):
        assert normalize_connection_type(ConnectionType.TETRA) == ConnectionType.TETRA


# ======================================================================
# Phase assignment
# ======================================================================

class TestAutoAssign:
    def test_picks_least_loaded_phase(self):
        placed = [_mono("a", 9.0, Phase.A), _mono("b", 3.0, Phase.B), _mono("c", 6.0, Phase.C)]
        assert auto_assign_phase(_mono("new", 5.0), placed) == Phase.B

    def test_production_counts_towards_load(self):
        """Combined contract + PV power decides."""
        placed = [_mono("a", 3.0, Phase.A), _mono("b", 1.0, Phase.B, pv=6.0), _mono("c", 5.0, Phase.C)]
        assert auto_assign_phase(_mono("new", 5.0), placed) == Phase.A

    def test_declared_phase_is_kept(self):
        assert auto_assign_phase(_mono("new", 5.0, Phase.C), []) == Phase.C

    def test_tie_breaks_on_lowest_phase(self):
        assert auto_assign_phase(_mono("new", 5.0), []) == Phase.A
        placed = [_mono("a", 4.0, Phase.A)]
        assert auto_assign_phase(_mono("new", 5.0), placed) == Phase.B

    def test_polyphase_clients_ignored(self):
        placed = [_tri("t", 30.0), _mono("a", 1.0, Phase.A)]
        assert auto_assign_phase(_mono("new", 5.0), placed) == Phase.B

    def test_seeded_rng_is_reproducible(self):
        picks_1 = [auto_assign_phase(_mono("x", 1.0), [], rng=np.random.default_rng(7)) for _ in range(5)]
        picks_2 = [auto_assign_phase(_mono("x", 1.0), [], rng=np.random.default_rng(7)) for _ in range(5)]
        assert picks_1 == picks_2
        assert all(p in (Phase.A, Phase.B, Phase.C) for p in picks_1)


class TestAssignMissingPhases:
    def test_round_robin_for_equal_clients(self):
        clients = [_mono(f"m{i}", 5.0) for i in range(6)]
        assignments = assign_missing_phases(clients)
        assert [assignments[f"m{i}"] for i in range(6)] == [
            Phase.A, Phase.B, Phase.C, Phase.A, Phase.B, Phase.C,
        ]

    def test_balances_against_declared_phases(self):
        clients = [_mono("fixed", 10.0, Phase.A), _mono("m1", 4.0), _mono("m2", 4.0), _mono("m3", 4.0)]
        assignments = assign_missing_phases(clients)
        assert assignments["fixed"] == Phase.A
        assert assignments["m1"] == Phase.B
        assert assignments["m2"] == Phase.C
        assert assignments["m3"] == Phase.B

    def test_polyphase_not_assigned(self):
        assignments = assign_missing_phases([_tri("t", 12.0), _mono("m", 3.0)])
        assert "t" not in assignments
        assert assignments["m"] == Phase.A

    def test_deterministic(self):
        clients = [_mono(f"m{i}", float(i % 3 + 1)) for i in range(12)]
        assert assign_missing_phases(clients) == assign_missing_phases(clients)


# ======================================================================
# Node distribution
# ======================================================================

class TestNodeDistribution:
    def test_mono_clients_land_on_their_phase(self):
        clients = [_mono("a", 6.0, Phase.A), _mono("b", 3.0, Phase.B)]
        dist = calculate_node_phase_distribution(clients, {})
        assert dist.charges_mono.to_dict() == {"A": 6.0, "B": 3.0, "C": 0.0}
        assert dist.mono_clients == {"A": 1, "B": 1, "C": 0}
        assert dist.poly_clients == 0

    def test_poly_split_equally(self):
        dist = calculate_node_phase_distribution([_tri("t", 9.0, pv=3.0)], {})
        assert dist.charges_poly.values() == pytest.approx((3.0, 3.0, 3.0))
        assert dist.productions_poly.values() == pytest.approx((1.0, 1.0, 1.0))
        assert dist.poly_clients == 1

    def test_balance_vector_redistributes_mono(self):
        clients = [_mono("a", 10.0, Phase.A), _tri("t", 9.0)]
        dist = calculate_node_phase_distribution(
            clients, {}, charges_balance=PhaseBalance(A=50.0, B=30.0, C=20.0),
        )
        assert dist.charges_mono.values() == pytest.approx((5.0, 3.0, 2.0))
        # MONO_ONLY scope leaves poly clients even
        assert dist.charges_poly.values() == pytest.approx((3.0, 3.0, 3.0))

    def test_all_clients_scope_applies_vector_to_poly(self):
        dist = calculate_node_phase_distribution(
            [_tri("t", 10.0)], {},
            charges_balance=PhaseBalance(A=50.0, B=30.0, C=20.0),
            balance_scope=BalanceScope.ALL_CLIENTS,
        )
        assert dist.charges_poly.values() == pytest.approx((5.0, 3.0, 2.0))

    def test_manual_poly_load_split_equally(self):
        dist = calculate_node_phase_distribution([], {}, manual_charges_kva=12.0)
        assert dist.charges_total.values() == pytest.approx((4.0, 4.0, 4.0))

    def test_manual_mono_load_follows_vector(self):
        dist = calculate_node_phase_distribution(
            [], {},
            manual_charges_kva=10.0,
            manual_load_type=ManualLoadType.MONO,
            charges_balance=PhaseBalance(A=70.0, B=20.0, C=10.0),
        )
        assert dist.charges_total.values() == pytest.approx((7.0, 2.0, 1.0))

    def test_manual_mono_load_follows_real_mono_split(self):
        clients = [_mono("a", 3.0, Phase.A), _mono("b", 1.0, Phase.C)]
        dist = calculate_node_phase_distribution(
            clients, {}, manual_charges_kva=8.0, manual_load_type=ManualLoadType.MONO,
        )
        assert dist.charges_total.values() == pytest.approx((9.0, 0.0, 3.0))

    def test_totals_conserved(self):
        clients = [_mono("a", 4.0, Phase.A, pv=2.0), _mono("b", 7.0, Phase.B), _tri("t", 6.0, pv=9.0)]
        dist = calculate_node_phase_distribution(
            clients, {},
            manual_charges_kva=5.0,
            manual_productions_kva=1.5,
            charges_balance=PhaseBalance(A=60.0, B=30.0, C=10.0),
            productions_balance=PhaseBalance(A=10.0, B=10.0, C=80.0),
        )
        assert dist.charges_total.total() == pytest.approx(4.0 + 7.0 + 6.0 + 5.0)
        assert dist.productions_total.total() == pytest.approx(2.0 + 9.0 + 1.5)

    def test_unassigned_mono_uses_assignment_map(self):
        dist = calculate_node_phase_distribution([_mono("a", 5.0)], {"a": Phase.C})
        assert dist.charges_mono.C == pytest.approx(5.0)

    def test_to_dict(self):
        dist = calculate_node_phase_distribution([_mono("a", 5.0, Phase.B)], {})
        data = dist.to_dict()
        assert data["charges"]["total"]["B"] == 5.0
        assert data["unbalance_pct"] == pytest.approx(200.0)


class TestUnbalance:
    def test_balanced_is_zero(self):
        assert unbalance_percent(PhaseTriple(5.0, 5.0, 5.0)) == pytest.approx(0.0)

    def test_max_deviation_from_mean(self):
        # mean 10, max deviation 5
        assert unbalance_percent(PhaseTriple(15.0, 10.0, 5.0)) == pytest.approx(50.0)

    def test_empty_is_zero(self):
        assert unbalance_percent(PhaseTriple()) == 0.0

    def test_mono_percents_balanced_when_empty(self):
        percents = mono_distribution_percents([_tri("t", 5.0)], {})
        assert percents.values() == (33.33, 33.33, 33.34)

    def test_mono_percents(self):
        clients = [_mono("a", 3.0, Phase.A), _mono("b", 1.0, Phase.B)]
        assert mono_distribution_percents(clients, {}).values() == pytest.approx((75.0, 25.0, 0.0))

    @pytest.mark.parametrize("loads, status", [
        ((10.0, 10.0, 10.0), "normal"),
        ((11.5, 10.0, 8.5), "warning"),
        ((14.0, 10.0, 6.0), "critical"),
    ])
    def test_project_status(self, loads, status):
        dist = NodePhaseDistribution(charges_mono=PhaseTriple(*loads))
        assert project_unbalance([dist]).status == status

    def test_project_sums_nodes(self):
        d1 = NodePhaseDistribution(charges_mono=PhaseTriple(6.0, 0.0, 0.0))
        d2 = NodePhaseDistribution(charges_mono=PhaseTriple(0.0, 6.0, 6.0))
        result = project_unbalance([d1, d2])
        assert result.charges.values() == (6.0, 6.0, 6.0)
        assert result.status == "normal"
