"""
Core module initialization.
Exports configuration, logging utilities and the engine error taxonomy.
"""

from orderflow.core.config import get_settings, Settings, EnvironmentMode
from orderflow.core.exceptions import (
    OrderEngineError,
    ResourceConflict,
    InvalidTransition,
    OrderAlreadyClosed,
    EmptyOrder,
    MissingDeliveryAddress,
    AuthorizationRequired,
    InvalidSettlementSelection,
    InvalidRequest,
    NotFound,
)

__all__ = [
    "get_settings",
    "Settings",
    "EnvironmentMode",
    "OrderEngineError",
    "ResourceConflict",
    "InvalidTransition",
    "OrderAlreadyClosed",
    "EmptyOrder",
    "MissingDeliveryAddress",
    "AuthorizationRequired",
    "InvalidSettlementSelection",
    "InvalidRequest",
    "NotFound",
]
