"""
🏗️ Service Layer - results for front ends
==========================================

Services wrap the playback core and report outcomes as ServiceResult
objects instead of raising. Known playback errors map to stable error
codes so a front end can react without parsing messages.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..errors import (ApiRequestError, AuthExchangeError, AuthStateMismatch,
                      DeviceInitError, KaleidoplanError, PlaybackUnavailable)

# Most specific first; the first isinstance match wins.
ERROR_CODES = (
    (AuthStateMismatch, "STATE_MISMATCH"),
    (AuthExchangeError, "AUTH_EXCHANGE_FAILED"),
    (DeviceInitError, "DEVICE_INIT_FAILED"),
    (PlaybackUnavailable, "PLAYBACK_UNAVAILABLE"),
    (ApiRequestError, "SPOTIFY_API_ERROR"),
)


@dataclass
class ServiceResult:
    """Outcome of one service call."""
    success: bool
    data: Optional[Any] = None
    message: Optional[str] = None
    error_code: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        """JSON friendly form used by the CLI."""
        result = {"success": self.success, "timestamp": self.timestamp.isoformat()}
        if self.data is not None:
            result["data"] = self.data
        if self.message:
            result["message"] = self.message
        if self.error_code:
            result["error_code"] = self.error_code
        return result


def error_code_for(error: Exception) -> str:
    for error_type, code in ERROR_CODES:
        if isinstance(error, error_type):
            return code
    return "OPERATION_FAILED"


class BaseService:
    """Shared result helpers; ``start`` in subclasses flips ``_initialized``."""

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(f"kaleidoplan.service.{name}")
        self._initialized = False

    def initialize(self) -> ServiceResult:
        self._initialized = True
        self.logger.info(f"🔧 {self.name} service started")
        return ServiceResult(success=True, message=f"{self.name} service started")

    def _handle_error(self, error: Exception, operation: str) -> ServiceResult:
        """Turn an exception into a failed result; playback errors keep their details."""
        code = error_code_for(error)
        if isinstance(error, KaleidoplanError):
            self.logger.warning(f"{self.name}.{operation} failed: {error}")
            data = dict(error.details) or None
        else:
            self.logger.error(f"Error in {self.name}.{operation}: {error}", exc_info=True)
            data = None
        return ServiceResult(success=False, data=data, message=f"{operation} failed: {error}", error_code=code)

    def _success_result(self, data: Any = None, message: str = None) -> ServiceResult:
        return ServiceResult(success=True, data=data, message=message)

    def _error_result(self, message: str, error_code: str = "ERROR", data: Any = None) -> ServiceResult:
        return ServiceResult(success=False, data=data, message=message, error_code=error_code)
