"""Sync error taxonomy.

Every per-item failure is one of these. The batch processor turns them into
``error`` results; they never fail the surrounding request.
"""

from __future__ import annotations


class SyncError(Exception):
    code = "sync_error"


class NotFoundError(SyncError):
    code = "not_found"


class ValidationError(SyncError):
    code = "validation_error"


class NotAuthorizedError(SyncError):
    code = "not_authorized"


class ClientIdConflictError(SyncError):
    """Raised by a store when an insert hits the unique ``client_id`` constraint."""

    code = "storage_constraint_violation"

    def __init__(self, client_id: str) -> None:
        super().__init__(f"clientId {client_id} already exists")
        self.client_id = client_id
