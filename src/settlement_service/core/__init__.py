"""Core infrastructure components."""

from settlement_service.core.caller import Caller
from settlement_service.core.database import Database
from settlement_service.core.exceptions import ServiceError
from settlement_service.core.state import AppState, get_app_state, init_app_state

__all__ = ["AppState", "Caller", "Database", "ServiceError", "get_app_state", "init_app_state"]
