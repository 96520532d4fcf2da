"""Tests for structured logging and settings."""

from __future__ import annotations

import json
import logging

import pytest
from pydantic import ValidationError

from feederflow.config import Settings
from feederflow.core.logging import JSONFormatter, calculation_context, calculation_id_var, setup_logging


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("feederflow.test", logging.INFO, __file__, 1, "spread %.1f V", (4.31,), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_basic_fields(self):
        entry = json.loads(JSONFormatter().format(_record()))
        assert entry["level"] == "INFO"
        assert entry["logger"] == "feederflow.test"
        assert entry["message"] == "spread 4.3 V"
        assert "calculation_id" not in entry

    def test_extra_fields(self):
        entry = json.loads(JSONFormatter().format(_record(device_id="equi8", iterations=3, unrelated="x")))
        assert entry["device_id"] == "equi8"
        assert entry["iterations"] == 3
        assert "unrelated" not in entry

    def test_calculation_id_injected(self):
        with calculation_context("calc-42") as cid:
            entry = json.loads(JSONFormatter().format(_record()))
        assert cid == "calc-42"
        assert entry["calculation_id"] == "calc-42"


class TestCalculationContext:
    def test_generated_id_and_reset(self):
        with calculation_context() as cid:
            assert len(cid) == 8
            assert calculation_id_var.get() == cid
        assert calculation_id_var.get() == ""

    def test_nested(self):
        with calculation_context("outer"):
            with calculation_context("inner"):
                assert calculation_id_var.get() == "inner"
            assert calculation_id_var.get() == "outer"


class TestSettings:
    def test_defaults(self):
        cfg = Settings()
        assert cfg.nominal_phase_voltage_v == 230.0
        assert cfg.calibration_max_iterations == 20
        assert cfg.coupled_max_iterations == 10

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("FEEDERFLOW_SECANT_DAMPING", "0.5")
        assert Settings().secant_damping == 0.5

    def test_budget_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(sweep_max_iterations=0)


class TestSetupLogging:
    @pytest.fixture(autouse=True)
    def _restore_root(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_json_handler(self):
        setup_logging(json_format=True, level="DEBUG")
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)

    def test_defaults_from_settings(self):
        setup_logging()
        root = logging.getLogger()
        assert root.level == logging.INFO
        assert not isinstance(root.handlers[0].formatter, JSONFormatter)
