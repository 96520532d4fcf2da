"""Exceptions raised while building the calculation network.

Device problems never raise: they are reported as diagnostic codes on the
calculation result.
"""


class FeederError(ValueError):
    """Base class for feederflow errors."""


class TopologyError(FeederError):
    """The feeder graph cannot be treated as a radial network."""
