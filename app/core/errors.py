"""Domain errors raised by the service layer.

Each carries the HTTP status it maps to; ``app.main`` registers a single
handler that renders them as ``{"detail": message}``.
"""
from fastapi import status


class SchedulingError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class InvalidRequestError(SchedulingError):
    status_code = status.HTTP_400_BAD_REQUEST


class PermissionDeniedError(SchedulingError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(SchedulingError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(SchedulingError):
    status_code = status.HTTP_409_CONFLICT


class SlotConflictError(ConflictError):
    """A slot changed underneath a conditional update (lost race)."""

    def __init__(self, slot_id: int | None) -> None:
        super().__init__(f"Slot {slot_id} was modified by another request; please retry")
        self.slot_id = slot_id
