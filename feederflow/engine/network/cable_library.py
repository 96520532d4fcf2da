"""Low-voltage cable catalog for four-wire 230/400 V feeders.

Each entry provides per-conductor impedances so that the neutral path can
be modelled separately from the phases:
  - r/x_phase_ohm_per_km: phase conductor at 70°C
  - r/x_neutral_ohm_per_km: neutral conductor (reduced section where the
    construction has one, e.g. 3×95+50 or twisted overhead 3×70+54.6)
  - ampacity_a: continuous current rating
"""

from __future__ import annotations

from feederflow.schemas.network import CableType


def _lv(type_id: str, label: str, r_ph: float, x_ph: float, r_n: float, x_n: float,
        material: str, ampacity: float) -> CableType:
    return CableType(
        id=type_id,
        label=label,
        r_phase_ohm_per_km=r_ph,
        x_phase_ohm_per_km=x_ph,
        r_neutral_ohm_per_km=r_n,
        x_neutral_ohm_per_km=x_n,
        material=material,
        ampacity_a=ampacity,
    )


CABLE_LIBRARY: list[CableType] = [
    # Underground aluminium XLPE, full neutral
    _lv("eaxvb_4x50", "Al XLPE 4×50mm²", 0.641, 0.080, 0.641, 0.080, "AL", 127),
    _lv("eaxvb_4x95", "Al XLPE 4×95mm²", 0.320, 0.078, 0.320, 0.078, "AL", 192),
    _lv("eaxvb_4x150", "Al XLPE 4×150mm²", 0.206, 0.076, 0.206, 0.076, "AL", 249),
    _lv("eaxvb_4x240", "Al XLPE 4×240mm²", 0.125, 0.075, 0.125, 0.075, "AL", 333),
    # Underground aluminium XLPE, reduced neutral
    _lv("eaxvb_3x95_50", "Al XLPE 3×95+50mm²", 0.320, 0.078, 0.641, 0.080, "AL", 192),
    _lv("eaxvb_3x150_95", "Al XLPE 3×150+95mm²", 0.206, 0.076, 0.320, 0.078, "AL", 249),
    # Underground copper XLPE
    _lv("exvb_4x16", "Cu XLPE 4×16mm²", 1.150, 0.085, 1.150, 0.085, "CU", 91),
    _lv("exvb_4x35", "Cu XLPE 4×35mm²", 0.524, 0.080, 0.524, 0.080, "CU", 140),
    _lv("exvb_4x95", "Cu XLPE 4×95mm²", 0.193, 0.077, 0.193, 0.077, "CU", 250),
    # Twisted overhead aluminium, almelec messenger neutral
    _lv("baxb_3x70_54", "Twisted Al 3×70+54.6mm²", 0.443, 0.100, 0.630, 0.100, "AL", 158),
    _lv("baxb_3x95_54", "Twisted Al 3×95+54.6mm²", 0.320, 0.100, 0.630, 0.100, "AL", 192),
    _lv("baxb_3x150_70", "Twisted Al 3×150+70mm²", 0.206, 0.100, 0.443, 0.100, "AL", 249),
]


def get_cable_library() -> list[dict]:
    """Return cable library as list of dicts."""
    return [c.model_dump() for c in CABLE_LIBRARY]


def find_cable_type(type_id: str) -> CableType | None:
    """Look up a catalog entry by id."""
    for cable in CABLE_LIBRARY:
        if cable.id == type_id:
            return cable
    return None


def filter_cable_types(
    material: str | None = None,
    min_ampacity_a: float | None = None,
    reduced_neutral: bool | None = None,
) -> list[CableType]:
    """Filter the catalog by material, rating and neutral construction."""
    result = CABLE_LIBRARY
    if material:
        result = [c for c in result if c.material == material.upper()]
    if min_ampacity_a is not None:
        result = [c for c in result if (c.ampacity_a or 0.0) >= min_ampacity_a]
    if reduced_neutral is not None:
        result = [
            c for c in result
            if (c.r_neutral_ohm_per_km > c.r_phase_ohm_per_km) == reduced_neutral
        ]
    return result
