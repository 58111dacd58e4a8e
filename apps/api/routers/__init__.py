"""Routers package."""

from . import (
    health,
    billing,
    generation,
)
