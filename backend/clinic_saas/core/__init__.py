"""Core module for configuration and utilities."""

from clinic_saas.core.config import settings
from clinic_saas.core.database import Base, get_session, transactional
from clinic_saas.core.errors import Result, ServiceError

__all__ = [
    "settings",
    "Base",
    "get_session",
    "transactional",
    "Result",
    "ServiceError",
]
