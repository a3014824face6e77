"""Error taxonomy shared by the scheduling core and the HTTP layer."""

from datetime import datetime

from fastapi import HTTPException, status


class SchedulingError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.detail)


class ValidationError(SchedulingError):
    status_code = status.HTTP_400_BAD_REQUEST


class ConflictError(SchedulingError):
    """The requested interval overlaps an active appointment of the same provider."""

    status_code = status.HTTP_409_CONFLICT

    def __init__(
        self,
        detail: str,
        start: datetime | None = None,
        end: datetime | None = None,
        appointment_id: int | None = None,
    ):
        super().__init__(detail)
        self.start = start
        self.end = end
        self.appointment_id = appointment_id

    @classmethod
    def for_interval(cls, start: datetime, end: datetime, appointment_id: int | None = None) -> 'ConflictError':
        return cls(
            f'Provider has a conflicting appointment from {start:%Y-%m-%d %H:%M} to {end:%H:%M}.',
            start=start,
            end=end,
            appointment_id=appointment_id,
        )


class NotFoundError(SchedulingError):
    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenError(SchedulingError):
    status_code = status.HTTP_403_FORBIDDEN
