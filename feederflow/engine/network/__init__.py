"""Feeder network module.

Provides phasor arithmetic, the cable catalog, the per-call radial
network model, phase distribution of client power, and the four-wire
sweep power flow.
"""

from .cable_library import (
    CABLE_LIBRARY,
    filter_cable_types,
    find_cable_type,
    get_cable_library,
)
from .complex_math import ComplexNumber, phasor_sum

__all__ = [
    "CABLE_LIBRARY",
    "filter_cable_types",
    "find_cable_type",
    "get_cable_library",
    "ComplexNumber",
    "phasor_sum",
]
