"""
Error hierarchy shared by the BSP decoding modules and the map service.

Usage:
    from bsp_errors import CorruptFormatError
    try:
        ...
    except CorruptFormatError as e:
        log.error("bad map: %s", e)
"""
from __future__ import annotations


class MapViewError(Exception):
    """Base class for all map decoding / request failures."""
    pass


class MapNotFoundError(MapViewError):
    """Raised when the requested map file does not exist."""
    pass


class MalformedParameterError(MapViewError):
    """Raised when a request parameter fails its grammar or names a missing record."""

    def __init__(self, name: str, value: str, reason: str = "malformed"):
        super().__init__(f"Parameter '{name}' is {reason}: {value!r}")
        self.name = name
        self.value = value


class CorruptFormatError(MapViewError):
    """Raised when the BSP data violates the format (bad index, truncation)."""
    pass


class StructuralViolationError(CorruptFormatError):
    """Raised when a record breaks a structural assumption of the format."""
    pass
