"""
FleetWarden: Common Primitives

Shared base models and utilities used across all systems.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel
from ulid import ULID


def new_id() -> str:
    """Generate a new ULID string. Time-sortable, globally unique."""
    return str(ULID())


def utc_now() -> datetime:
    """Current UTC time, timezone-aware."""
    return datetime.now(timezone.utc)


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


# ─── Base Models ──────────────────────────────────────────────────


class FleetBaseModel(BaseModel):
    """Base model for all FleetWarden records."""

    model_config = {"populate_by_name": True, "from_attributes": True}


class FrozenRecord(FleetBaseModel):
    """Append-only record. Never mutated once created."""

    model_config = {"populate_by_name": True, "from_attributes": True, "frozen": True}


