"""Error kinds raised by the engines and rendered by the API."""


class CashPathError(Exception):
    status_code = 500
    code = "error"

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message, **self.extra}


class NotFoundError(CashPathError):
    """Entity missing, or not owned by the caller."""

    status_code = 404
    code = "not_found"


class ValidationError(CashPathError):
    status_code = 400
    code = "validation_error"


class InsufficientFundsError(CashPathError):
    status_code = 400
    code = "insufficient_funds"

    def __init__(self, message: str, available: int):
        super().__init__(message, available=available)
        self.available = available


class UnauthorizedError(CashPathError):
    status_code = 401
    code = "unauthorized"


class ExternalServiceError(CashPathError):
    status_code = 502
    code = "external_service_error"


class MilestoneGenerationError(ExternalServiceError):
    code = "milestone_generation_error"
