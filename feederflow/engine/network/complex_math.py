"""Immutable complex value type for phasor arithmetic.

The sweep solver works on numpy ``complex128`` arrays. Device models and
result records use :class:`ComplexNumber` so that phasors crossing module
boundaries are hashable, frozen and serialize to plain ``{"re", "im"}``
dicts.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Union

Number = Union[int, float, complex, "ComplexNumber"]


def _coerce(value: Number) -> ComplexNumber:
    if isinstance(value, ComplexNumber):
        return value
    if isinstance(value, (int, float)):
        return ComplexNumber(float(value), 0.0)
    if isinstance(value, complex):
        return ComplexNumber(value.real, value.imag)
    raise TypeError(f"Cannot combine ComplexNumber with {type(value).__name__}")


@dataclass(frozen=True)
class ComplexNumber:
    """Rectangular complex value (re + j·im)."""
    re: float = 0.0
    im: float = 0.0

    @classmethod
    def from_polar(cls, magnitude: float, angle_rad: float) -> ComplexNumber:
        return cls(magnitude * math.cos(angle_rad), magnitude * math.sin(angle_rad))

    @classmethod
    def from_complex(cls, value: complex) -> ComplexNumber:
        value = complex(value)
        return cls(value.real, value.imag)

    def __complex__(self) -> complex:
        return complex(self.re, self.im)

    def __add__(self, other: Number) -> ComplexNumber:
        o = _coerce(other)
        return ComplexNumber(self.re + o.re, self.im + o.im)

    __radd__ = __add__

    def __sub__(self, other: Number) -> ComplexNumber:
        o = _coerce(other)
        return ComplexNumber(self.re - o.re, self.im - o.im)

    def __rsub__(self, other: Number) -> ComplexNumber:
        return _coerce(other) - self

    def __mul__(self, other: Number) -> ComplexNumber:
        o = _coerce(other)
        return ComplexNumber(
            self.re * o.re - self.im * o.im,
            self.re * o.im + self.im * o.re,
        )

    __rmul__ = __mul__

    def __truediv__(self, other: Number) -> ComplexNumber:
        o = _coerce(other)
        denom = o.re * o.re + o.im * o.im
        if denom == 0.0:
            raise ZeroDivisionError("complex division by zero")
        return ComplexNumber(
            (self.re * o.re + self.im * o.im) / denom,
            (self.im * o.re - self.re * o.im) / denom,
        )

    def __rtruediv__(self, other: Number) -> ComplexNumber:
        return _coerce(other) / self

    def __neg__(self) -> ComplexNumber:
        return ComplexNumber(-self.re, -self.im)

    def __abs__(self) -> float:
        return math.hypot(self.re, self.im)

    @property
    def magnitude(self) -> float:
        return math.hypot(self.re, self.im)

    @property
    def angle(self) -> float:
        """Argument in radians, in (-π, π]."""
        return math.atan2(self.im, self.re)

    @property
    def angle_deg(self) -> float:
        return math.degrees(self.angle)

    def scale(self, factor: float) -> ComplexNumber:
        return ComplexNumber(self.re * factor, self.im * factor)

    def conjugate(self) -> ComplexNumber:
        return ComplexNumber(self.re, -self.im)

    def normalize(self) -> ComplexNumber:
        """Unit phasor with the same angle. Zero stays zero."""
        mag = self.magnitude
        if mag == 0.0:
            return ComplexNumber()
        return ComplexNumber(self.re / mag, self.im / mag)

    def dot(self, other: Number) -> float:
        """Projection product Re(self · conj(other))."""
        o = _coerce(other)
        return self.re * o.re + self.im * o.im

    def is_finite(self) -> bool:
        return math.isfinite(self.re) and math.isfinite(self.im)

    def to_dict(self) -> dict[str, float]:
        return {"re": self.re, "im": self.im}


ZERO = ComplexNumber()


def phasor_sum(values: Iterable[Number]) -> ComplexNumber:
    """Sum an iterable of phasors."""
    total = ZERO
    for value in values:
        total = total + value
    return total
