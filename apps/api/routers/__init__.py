"""Routers package."""

from . import (
    health,
    credits,
    payments,
    user,
)
