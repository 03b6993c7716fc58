from dataclasses import dataclass
from typing import Any, Optional

#########################################################################
## Exceptions ###########################################################
#########################################################################

class LangLensError(Exception):
    """Base class for langlens errors."""


class ServiceError(LangLensError):
    """The execution service failed a request."""


class ServiceConnectionError(ServiceError):
    """The execution service could not be reached or the stream dropped."""


class ServiceRequestError(ServiceError):
    """The execution service rejected a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ConnectionLostError(LangLensError):
    """Reconnection attempts were exhausted; the thread keeps its last state."""


class ApiError(LangLensError):
    """User-facing failure of a list/query operation."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        original_error: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.original_error = original_error

#########################################################################
## Action outcomes ######################################################
#########################################################################

OK = "ok"
IGNORED = "ignored"
REJECTED = "rejected"
FAILED = "failed"


@dataclass(frozen=True)
class ActionResult:
    """Outcome of a user-initiated thread action."""

    status: str
    reason: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status == OK

    @classmethod
    def success(cls) -> "ActionResult":
        return cls(OK)

    @classmethod
    def ignored(cls, reason: str) -> "ActionResult":
        return cls(IGNORED, reason=reason)

    @classmethod
    def rejected(cls, reason: str) -> "ActionResult":
        return cls(REJECTED, reason=reason)

    @classmethod
    def failed(cls, error: BaseException) -> "ActionResult":
        return cls(FAILED, reason=str(error), error=error)
