from __future__ import annotations


class AvailSyncError(Exception):
    pass


class ValidationError(AvailSyncError, ValueError):
    pass


class NotAuthenticatedError(ValidationError):
    def __init__(self, message: str = "login required") -> None:
        super().__init__(message)


class NotLinkedError(AvailSyncError):
    def __init__(self, event_id: str, message: str = "not linked") -> None:
        super().__init__(message)
        self.event_id = event_id


class StoreError(AvailSyncError):
    def __init__(
        self,
        operation: str,
        *,
        owner_id: str | None = None,
        event_id: str | None = None,
    ) -> None:
        super().__init__(f"store operation failed: {operation}")
        self.operation = operation
        self.owner_id = owner_id
        self.event_id = event_id

    def context(self) -> dict[str, str | None]:
        return {"operation": self.operation, "owner_id": self.owner_id, "event_id": self.event_id}


def require_owner(owner_id: str | None) -> str:
    owner = str(owner_id or "").strip()
    if not owner:
        raise NotAuthenticatedError()
    return owner
