from api.src.models.request import (
    Request,
    RunResponse,
    StatusResponse,
    ErrorResponse,
    RequestError,
    UnknownTask,
    UnknownRun,
    MalformedRequest,
)

__all__ = [
    "Request",
    "RunResponse",
    "StatusResponse",
    "ErrorResponse",
    "RequestError",
    "UnknownTask",
    "UnknownRun",
    "MalformedRequest",
]
