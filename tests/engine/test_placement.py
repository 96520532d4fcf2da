"""Tests for engine.devices.placement — EQUI8 and SRG2 placement advisors."""

from __future__ import annotations

import json

import pytest

from feederflow import run_calculation
from feederflow.engine.devices import (
    feeder_impedance,
    find_optimal_compensator_node,
    find_optimal_regulator_node,
)
from feederflow.engine.network.network_model import NetworkModel
from feederflow.schemas.equipment import CompensatorConfig, EquipmentSet
from feederflow.schemas.network import CalculationScenario, LoadModel, PhaseBalance

CONSUMPTION = CalculationScenario.CONSUMPTION


def _base(project):
    return NetworkModel.from_project(project), run_calculation(project, CONSUMPTION)


# ======================================================================
# Feeder impedance
# ======================================================================

class TestFeederImpedance:
    def test_largest_path_impedance(self, overhead_feeder):
        network = NetworkModel.from_project(overhead_feeder)
        assert feeder_impedance(network) == pytest.approx(0.5 * 0.320)

    def test_invalid_window_rejected(self, overhead_feeder):
        network, base = _base(overhead_feeder)
        with pytest.raises(ValueError, match="window"):
            find_optimal_compensator_node(network, base, min_ratio=0.7, max_ratio=0.1)


# ======================================================================
# EQUI8
# ======================================================================

class TestCompensatorPlacement:
    def test_ranked_by_current_over_impedance(self, overhead_feeder):
        network, base = _base(overhead_feeder)
        analysis = find_optimal_compensator_node(network, base)

        # n3 (0.160 Ω) lies beyond 70 % of the feeder impedance
        assert [c.node_id for c in analysis.candidates] == ["n1", "n2"]
        assert analysis.best.node_id == "n1"
        assert analysis.min_zph_ohm == pytest.approx(0.016)
        assert analysis.max_zph_ohm == pytest.approx(0.112)
        assert analysis.reason == ""

        for candidate in analysis.candidates:
            feed = base.cable_currents[network.upstream[candidate.node_id].cable_id]
            assert candidate.neutral_current_a == pytest.approx(feed.neutral_current_a)
            assert candidate.neutral_current_a > 2.0
            assert candidate.score == pytest.approx(candidate.neutral_current_a / candidate.zph_ohm)
            assert candidate.position_ratio == pytest.approx(candidate.zph_ohm / 0.16)

    def test_reduced_neutral_reported(self, overhead_feeder):
        network, base = _base(overhead_feeder)
        n2 = next(c for c in find_optimal_compensator_node(network, base).candidates if c.node_id == "n2")
        assert n2.zph_ohm == pytest.approx(0.064)
        assert n2.zn_ohm == pytest.approx(0.126)

    def test_balanced_feeder_has_no_candidate(self, feeder_factory):
        project = feeder_factory(loads={"n2": 30.0, "n3": 10.0}, lengths_m=(100.0, 100.0, 300.0))
        network, base = _base(project)
        analysis = find_optimal_compensator_node(network, base)
        assert analysis.best is None
        assert "neutral current" in analysis.reason

    def test_window_excludes_every_node(self, unbalanced_feeder):
        # Path impedances 0.0064 / 0.1024 / 0.1344 Ω against a 0.0134..0.0941 Ω window
        network, base = _base(unbalanced_feeder)
        analysis = find_optimal_compensator_node(network, base)
        assert analysis.candidates == []
        assert analysis.reason

    def test_current_threshold(self, overhead_feeder):
        network, base = _base(overhead_feeder)
        assert find_optimal_compensator_node(network, base, min_neutral_current_a=1e6).candidates == []

    def test_advised_node_reduces_spread(self, overhead_feeder):
        network, base = _base(overhead_feeder)
        node_id = find_optimal_compensator_node(network, base).best.node_id
        equipment = EquipmentSet(compensators=[CompensatorConfig(id="equi8", node_id=node_id)])
        comp = run_calculation(overhead_feeder, CONSUMPTION, equipment).compensator("equi8")
        assert comp.active
        assert comp.achieved_spread_v < comp.initial_spread_v

    def test_json_serializable(self, overhead_feeder):
        network, base = _base(overhead_feeder)
        data = find_optimal_compensator_node(network, base).to_dict()
        json.dumps(data)
        assert data["best"]["node_id"] == "n1"
        assert data["impedance_bounds_ohm"] == {"min": 0.016, "max": 0.112}


# ======================================================================
# SRG2
# ======================================================================

class TestRegulatorPlacement:
    def test_ranked_by_spread_times_impedance(self, overhead_feeder):
        network, base = _base(overhead_feeder)
        analysis = find_optimal_regulator_node(network, base, max_delta_v=100.0)

        # Window 0.024..0.096 Ω keeps n1 and n2
        assert [c.node_id for c in analysis.candidates] == ["n1", "n2"]
        for candidate in analysis.candidates:
            voltages = base.voltages(candidate.node_id)
            assert candidate.delta_v == pytest.approx(voltages.spread())
            assert candidate.mean_voltage_v == pytest.approx(voltages.mean())
            assert candidate.score == pytest.approx(candidate.delta_v * candidate.zph_ohm)

    def test_unbalance_ceiling(self, overhead_feeder):
        network, base = _base(overhead_feeder)
        analysis = find_optimal_regulator_node(network, base)
        assert all(c.delta_v <= 8.0 for c in analysis.candidates)
        assert "n3" not in {c.node_id for c in analysis.candidates}

        tight = find_optimal_regulator_node(network, base, max_delta_v=0.01)
        assert tight.best is None
        assert "ΔU" in tight.reason

    def test_balanced_feeder(self, feeder_factory):
        project = feeder_factory(loads={"n2": 30.0, "n3": 10.0}, lengths_m=(100.0, 100.0, 300.0))
        network, base = _base(project)
        analysis = find_optimal_regulator_node(network, base)
        assert {c.node_id for c in analysis.candidates} == {"n1", "n2"}
        assert all(c.delta_v == pytest.approx(0.0, abs=1e-6) for c in analysis.candidates)

    def test_distributed_load_is_ranked(self, feeder_factory):
        project = feeder_factory(
            loads={"n1": 5.0, "n2": 5.0},
            lengths_m=(100.0, 100.0, 300.0),
            load_model=LoadModel.DISTRIBUTED,
            charges_balance=PhaseBalance(A=40.0, B=30.0, C=30.0),
        )
        network, base = _base(project)
        analysis = find_optimal_regulator_node(network, base)
        scores = [c.score for c in analysis.candidates]
        assert scores == sorted(scores)
        assert json.loads(json.dumps(analysis.to_dict()))["best"]["node_id"] == analysis.best.node_id
