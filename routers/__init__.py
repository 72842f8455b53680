"""Routers package."""

from . import (
    health,
    memberships,
    approvals,
    billing,
)
