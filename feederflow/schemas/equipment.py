"""Grid-conditioning equipment attached to a feeder for one calculation."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class RegulatorVariant(str, Enum):
    SRG2_400 = "SRG2-400"
    SRG2_230 = "SRG2-230"


# Tap coefficients in percent, per variant
VARIANT_COEFFICIENTS: dict[RegulatorVariant, dict[str, float]] = {
    RegulatorVariant.SRG2_400: {
        "lo2_coefficient_pct": -7.0,
        "lo1_coefficient_pct": -3.5,
        "bo1_coefficient_pct": 3.5,
        "bo2_coefficient_pct": 7.0,
    },
    RegulatorVariant.SRG2_230: {
        "lo2_coefficient_pct": -6.0,
        "lo1_coefficient_pct": -3.0,
        "bo1_coefficient_pct": 3.0,
        "bo2_coefficient_pct": 6.0,
    },
}


class RegulatorConfig(BaseModel):
    """Tap-changing series regulator installed at one node."""
    model_config = {"frozen": True}

    id: str
    node_id: str
    enabled: bool = True
    variant: RegulatorVariant = RegulatorVariant.SRG2_400
    target_voltage_v: float = Field(default=230.0, gt=0)
    lo2_threshold_v: float = 246.0
    lo1_threshold_v: float = 238.0
    bo1_threshold_v: float = 222.0
    bo2_threshold_v: float = 214.0
    lo2_coefficient_pct: float = -7.0
    lo1_coefficient_pct: float = -3.5
    bo1_coefficient_pct: float = 3.5
    bo2_coefficient_pct: float = 7.0
    hysteresis_v: float = Field(default=2.0, ge=0)
    time_delay_s: float = Field(default=7.0, ge=0)
    max_injection_kva: float = Field(default=85.0, gt=0)
    max_draw_kva: float = Field(default=100.0, gt=0)

    @model_validator(mode="before")
    @classmethod
    def _variant_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        variant = RegulatorVariant(data.get("variant", RegulatorVariant.SRG2_400))
        for key, value in VARIANT_COEFFICIENTS[variant].items():
            data.setdefault(key, value)
        return data

    @model_validator(mode="after")
    def _check_ordering(self) -> RegulatorConfig:
        if not (self.lo2_threshold_v > self.lo1_threshold_v > self.bo1_threshold_v > self.bo2_threshold_v):
            raise ValueError("thresholds must satisfy LO2 > LO1 > BO1 > BO2")
        if self.lo2_coefficient_pct > 0 or self.lo1_coefficient_pct > 0:
            raise ValueError("abatement coefficients must be negative")
        if self.bo1_coefficient_pct < 0 or self.bo2_coefficient_pct < 0:
            raise ValueError("boost coefficients must be positive")
        return self


class CompensatorMode(str, Enum):
    CME = "cme"


class ThermalWindow(str, Enum):
    MIN_15 = "15min"
    HOURS_3 = "3h"
    PERMANENT = "permanent"


# Maximum neutral current per thermal window (A)
THERMAL_LIMITS_A: dict[ThermalWindow, float] = {
    ThermalWindow.MIN_15: 80.0,
    ThermalWindow.HOURS_3: 60.0,
    ThermalWindow.PERMANENT: 45.0,
}


class CompensatorConfig(BaseModel):
    """Neutral shunt compensator installed at one node.

    ``zph_ohm`` / ``zn_ohm`` are the equivalent upstream impedances seen by
    the device; when left unset they are derived from the feeder path.
    Physically invalid values are reported on the device diagnostic rather
    than rejected here.
    """
    model_config = {"frozen": True}

    id: str
    node_id: str
    enabled: bool = True
    mode: CompensatorMode = CompensatorMode.CME
    zph_ohm: float | None = None
    zn_ohm: float | None = None
    tolerance_a: float = Field(default=5.0, ge=0)
    max_power_kva: float = Field(default=60.0, gt=0)
    thermal_window: ThermalWindow = ThermalWindow.MIN_15

    @property
    def thermal_limit_a(self) -> float:
        return THERMAL_LIMITS_A[self.thermal_window]


class CableUpgrade(BaseModel):
    """Swap the type of one cable for a calculation."""
    model_config = {"frozen": True}

    cable_id: str
    new_type_id: str


class EquipmentSet(BaseModel):
    model_config = {"frozen": True}

    regulators: list[RegulatorConfig] = Field(default_factory=list)
    compensators: list[CompensatorConfig] = Field(default_factory=list)
    cable_upgrades: list[CableUpgrade] = Field(default_factory=list)
