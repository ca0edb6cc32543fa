"""Typed plan limits.

Plan limits are stored as JSON but always read through PlanLimits, which
validates every cap at load time. ``-1`` means unlimited; a metric the plan
does not mention has a cap of 0.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

UNLIMITED = -1


class MetricType(str, Enum):
    """Metered resources."""
    USERS = "users"
    PATIENTS = "patients"
    APPOINTMENTS = "appointments"
    STORAGE = "storage"
    API_CALLS = "api_calls"


# Keys used by older plan definitions
LEGACY_LIMIT_KEYS = {
    "appointments_per_month": MetricType.APPOINTMENTS.value,
    "storage_gb": MetricType.STORAGE.value,
}


class PlanLimits(BaseModel):
    """Per-metric integer caps for a plan."""

    users: int = Field(0, ge=UNLIMITED)
    patients: int = Field(0, ge=UNLIMITED)
    appointments: int = Field(0, ge=UNLIMITED)
    storage: int = Field(0, ge=UNLIMITED)
    api_calls: int = Field(0, ge=UNLIMITED)

    class Config:
        extra = "forbid"
        frozen = True

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        normalized = {}
        for key, value in data.items():
            normalized[LEGACY_LIMIT_KEYS.get(key, key)] = value
        return normalized

    @classmethod
    def from_storage(cls, raw: Optional[dict]) -> "PlanLimits":
        return cls.model_validate(raw or {})

    def to_storage(self) -> dict[str, int]:
        return self.model_dump()

    def limit_for(self, metric: MetricType) -> int:
        return getattr(self, MetricType(metric).value)


def is_unlimited(limit: int) -> bool:
    return limit == UNLIMITED


def within_limit(current: int, limit: int) -> bool:
    """Whether ``current`` usage is inside ``limit``."""
    return is_unlimited(limit) or current <= limit


def exceeds_limit(current: int, limit: int) -> bool:
    """Whether ``current`` usage is an overage worth flagging.

    Only positive caps flag; unlimited and zero caps never do.
    """
    return limit > 0 and current > limit


def usage_percentage(current: int, limit: int) -> float:
    """Usage as a percentage of a positive cap, else 0."""
    if limit <= 0:
        return 0.0
    return current / limit * 100
