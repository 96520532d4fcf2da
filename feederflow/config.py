from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {"env_prefix": "FEEDERFLOW_", "case_sensitive": False}

    # Network
    nominal_phase_voltage_v: float = 230.0
    # Source targets above this are line-to-line values
    line_voltage_threshold_v: float = 350.0

    # Base solver
    sweep_tolerance_v: float = 0.01
    sweep_max_iterations: int = Field(default=100, ge=1)

    # Regulators
    regulator_max_iterations: int = Field(default=100, ge=1)
    coupled_max_iterations: int = Field(default=10, ge=1)

    # Compensators
    calibration_tolerance_v: float = 0.5
    calibration_max_iterations: int = Field(default=20, ge=1)
    secant_damping: float = 0.7
    secant_max_step_ratio: float = 0.2
    min_operating_impedance_ohm: float = 0.15
    min_voltage_spread_v: float = 0.5

    # Logging
    log_level: str = "INFO"
    json_logs: bool = False


settings = Settings()
