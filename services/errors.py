"""Domain errors raised by the membership engine.

Each error is an ``HTTPException`` with a fixed status code so services can
raise it directly and routers surface it verbatim. ``detail`` is a dict with a
stable ``code`` for clients and a human readable ``message``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import HTTPException


class EngineError(HTTPException):
    status_code = 400
    code = "engine_error"

    def __init__(self, message: str, **context: Any):
        detail: Dict[str, Any] = {"code": self.code, "message": message}
        if context:
            detail.update(context)
        super().__init__(status_code=type(self).status_code, detail=detail)
        self.message = message

    def __str__(self) -> str:
        return self.message


class NotFound(EngineError):
    status_code = 404
    code = "not_found"


class ValidationError(EngineError):
    status_code = 422
    code = "validation_error"


class InvalidDateRange(EngineError):
    status_code = 422
    code = "invalid_date_range"


class InsufficientAllowance(EngineError):
    status_code = 422
    code = "insufficient_allowance"


class InvalidRefundAmount(EngineError):
    status_code = 422
    code = "invalid_refund_amount"


class InvalidTransition(EngineError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, message: str, *, current: Optional[str] = None, target: Optional[str] = None):
        context: Dict[str, Any] = {}
        if current is not None:
            context["current_status"] = current
        if target is not None:
            context["target_status"] = target
        super().__init__(message, **context)


class NotCancellable(InvalidTransition):
    code = "not_cancellable"


class AlreadyReviewed(EngineError):
    status_code = 409
    code = "already_reviewed"


class PersistenceConflict(EngineError):
    status_code = 409
    code = "persistence_conflict"
