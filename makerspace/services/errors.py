from __future__ import annotations


class SchedulingError(Exception):
    def __init__(self, message: str, reasons: list[str] | None = None):
        super().__init__(message)
        self.message = message
        self.reasons = list(reasons or [])


class InvalidRequestError(SchedulingError):
    pass


class NotFoundError(SchedulingError):
    pass


class InactiveError(SchedulingError):
    pass


class ProgressRejectedError(SchedulingError):
    pass


class ConflictError(SchedulingError):
    """Raised when a requested window collides with an existing one.

    ``role`` names the dimension that collided: ``"machine"``, ``"manager"``
    or ``"user"``.
    """

    def __init__(
        self,
        message: str,
        role: str = "machine",
        conflict_ids: list[int] | None = None,
        reasons: list[str] | None = None,
    ):
        super().__init__(message, reasons)
        self.role = role
        self.conflict_ids = list(conflict_ids or [])


class AuthorizationError(SchedulingError):
    pass


class InvalidTransitionError(SchedulingError):
    pass
