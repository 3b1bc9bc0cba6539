"""
Error taxonomy for the multiplayer session host.

Every failure that reaches an HTTP handler is one of these; provisioner and
blob-store errors are re-classified before they leave the orchestrator or the
storage adapter.
"""
from typing import Dict, List


class MultiplayerError(Exception):
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {'success': False, 'message': self.message}


class ValidationError(MultiplayerError):
    status_code = 422

    def __init__(self, errors: Dict[str, List[str]]):
        self.errors = errors
        super().__init__('Validation failed')

    def to_dict(self) -> dict:
        return {'success': False, 'message': self.message, 'errors': self.errors}

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls({field: [message]})


class AccessDenied(MultiplayerError):
    status_code = 403


class UnsupportedEngine(MultiplayerError):
    status_code = 400

    def __init__(self, engine_type: str, message: str = None):
        self.engine_type = engine_type
        super().__init__(
            message or 'Multiplayer sessions are only supported for PlayCanvas workspaces'
        )


class NotFound(MultiplayerError):
    status_code = 404


class ProvisioningFailed(MultiplayerError):
    """Task launch failed or timed out; nothing was persisted, Start may be retried."""
    status_code = 503

    def __init__(self, workspace_id: int, reason: str):
        self.workspace_id = workspace_id
        self.reason = reason
        super().__init__(f'Failed to start multiplayer session: {reason}')


class TeardownFailed(MultiplayerError):
    """Task stop failed for a retryable reason; the session is still active."""
    status_code = 503

    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f'Failed to stop multiplayer session: {reason}')


class StorageFailed(MultiplayerError):
    status_code = 500

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f'Failed to {operation}: {reason}')
