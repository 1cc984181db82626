from fastapi import Request
from fastapi.responses import JSONResponse


class ServiceError(Exception):
    """Base class for failures surfaced to the caller with a specific reason."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    status_code = 400


class AuthorizationError(ServiceError):
    status_code = 403


class NotFoundError(ServiceError):
    status_code = 404


class ConflictError(ServiceError):
    status_code = 409


class StateTransitionError(ServiceError):
    status_code = 400


class GatewayError(ServiceError):
    """A payment provider call failed."""

    status_code = 502

    def __init__(self, message: str, code: str = "GATEWAY_ERROR", details=None):
        super().__init__(message)
        self.code = code
        self.details = details

    def as_dict(self):
        return {"code": self.code, "message": self.message, "details": self.details}


async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})
