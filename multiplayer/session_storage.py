"""
Per-session progress file storage.

Every artifact lives under
``<base>/company_{company_id}/workspace_{workspace_id}/session_{session_id}/{filename}``
so nothing is visible across sessions, workspaces or companies. Ownership is
checked by the caller before any of these methods run.
"""
import json
import logging
import os
import re
import secrets
from typing import Iterable, List

from botocore.exceptions import BotoCoreError, ClientError

from .blob_store import BlobNotFound, BlobStore
from .exceptions import NotFound, StorageFailed, ValidationError

logger = logging.getLogger(__name__)

UNSAFE_FILENAME_CHARS = re.compile(r'[/\\:*?"<>|]')
MAX_FILENAME_LENGTH = 100
MAX_EXTENSION_LENGTH = 10

# Errors a blob backend may raise; they never reach the HTTP layer as-is
BACKEND_ERRORS = (OSError, ValueError, ClientError, BotoCoreError)


def sanitize_filename(filename: str) -> str:
    filename = UNSAFE_FILENAME_CHARS.sub('', filename or '')
    filename = filename.lstrip('.')

    if not filename:
        filename = f"unnamed_{secrets.token_hex(4)}"

    if len(filename) > MAX_FILENAME_LENGTH:
        name, ext = os.path.splitext(filename)
        ext = ext.lstrip('.')[:MAX_EXTENSION_LENGTH]
        if ext:
            filename = f"{name[:MAX_FILENAME_LENGTH - 1 - len(ext)]}.{ext}"
        else:
            filename = name[:MAX_FILENAME_LENGTH]

    return filename


class SessionStorage:

    def __init__(
        self,
        blob_store: BlobStore,
        base_path: str = 'multiplayer',
        max_file_size: int = 10 * 1024 * 1024,
        allowed_extensions: Iterable[str] = ('json', 'txt', 'dat', 'save'),
    ):
        self.blob_store = blob_store
        self.base_path = base_path.strip('/')
        self.max_file_size = max_file_size
        self.allowed_extensions = tuple(ext.lower() for ext in allowed_extensions)

    # ==================== Paths ====================

    def workspace_path(self, workspace) -> str:
        return f"{self.base_path}/company_{workspace.company_id}/workspace_{workspace.id}"

    def session_path(self, session) -> str:
        return f"{self.workspace_path(session.workspace)}/session_{session.id}"

    def file_path(self, session, filename: str) -> str:
        return f"{self.session_path(session)}/{filename}"

    # ==================== Operations ====================

    def validate_upload(self, data: bytes, filename: str):
        errors = {}
        if len(data) > self.max_file_size:
            errors['file'] = [
                f"File size exceeds maximum allowed size of {self.max_file_size / 1024 / 1024:g}MB"
            ]

        ext = os.path.splitext(filename)[1].lstrip('.').lower()
        if ext not in self.allowed_extensions:
            errors.setdefault('filename', []).append(
                f"File extension not allowed. Allowed extensions: {', '.join(self.allowed_extensions)}"
            )

        if errors:
            raise ValidationError(errors)

    def upload(self, session, data: bytes, filename: str) -> dict:
        """Store a progress file; an existing file with the same name is replaced."""
        filename = sanitize_filename(filename)
        self.validate_upload(data, filename)
        return self._write(session, data, filename, 'store progress file')

    def store_server_data(self, session, data: dict, filename: str = 'server_data.json') -> dict:
        filename = sanitize_filename(filename)
        try:
            payload = json.dumps(data, indent=4, ensure_ascii=False).encode('utf-8')
        except (TypeError, ValueError) as e:
            raise ValidationError.for_field('data', f"Data is not JSON serializable: {e}")
        return self._write(session, payload, filename, 'store server data')

    def _write(self, session, data: bytes, filename: str, operation: str) -> dict:
        path = self.file_path(session, filename)
        try:
            stored_path = self.blob_store.put(path, data)
            url = self.blob_store.url(stored_path)
        except BACKEND_ERRORS as e:
            logger.error(f"Failed to {operation} for session {session.id} ({path}): {e}")
            raise StorageFailed(operation, str(e)) from e

        logger.info(
            f"Stored {filename} for session {session.id} "
            f"(workspace {session.workspace_id}, {len(data)} bytes) at {stored_path}"
        )
        return {
            'path': stored_path,
            'url': url,
            'filename': filename,
            'size': len(data),
        }

    def list_files(self, session) -> List[dict]:
        try:
            blobs = self.blob_store.list(self.session_path(session))
            return [
                {
                    'filename': blob.path.rsplit('/', 1)[-1],
                    'path': blob.path,
                    'url': self.blob_store.url(blob.path),
                    'size': blob.size,
                    'last_modified': blob.last_modified.isoformat(),
                }
                for blob in blobs
            ]
        except BACKEND_ERRORS as e:
            logger.error(f"Failed to list progress files for session {session.id}: {e}")
            raise StorageFailed('list progress files', str(e)) from e

    def download(self, session, filename: str) -> dict:
        filename = sanitize_filename(filename)
        path = self.file_path(session, filename)
        try:
            content = self.blob_store.get(path)
        except BlobNotFound:
            raise NotFound('File not found')
        except BACKEND_ERRORS as e:
            logger.error(f"Failed to read {path} for session {session.id}: {e}")
            raise StorageFailed('retrieve progress file', str(e)) from e

        return {
            'content': content,
            'path': path,
            'filename': filename,
            'size': len(content),
        }

    def delete_file(self, session, filename: str):
        filename = sanitize_filename(filename)
        path = self.file_path(session, filename)
        try:
            deleted = self.blob_store.delete(path)
        except BACKEND_ERRORS as e:
            logger.error(f"Failed to delete {path} for session {session.id}: {e}")
            raise StorageFailed('delete progress file', str(e)) from e

        if not deleted:
            raise NotFound('File not found')
        logger.info(f"Deleted {filename} for session {session.id} ({path})")

    def cleanup_session(self, session) -> int:
        """Remove every artifact of a session; returns the number of files deleted."""
        path = self.session_path(session)
        try:
            deleted = self.blob_store.delete_prefix(path)
        except BACKEND_ERRORS as e:
            logger.error(f"Failed to clean up files for session {session.id}: {e}")
            raise StorageFailed('clean up session files', str(e)) from e

        logger.info(f"Cleaned up {deleted} files for session {session.id} ({path})")
        return deleted

    def storage_stats(self, workspace) -> dict:
        try:
            blobs = self.blob_store.list(self.workspace_path(workspace), recursive=True)
        except BACKEND_ERRORS as e:
            logger.error(f"Failed to compute storage stats for workspace {workspace.id}: {e}")
            raise StorageFailed('compute storage stats', str(e)) from e

        total_size = sum(blob.size for blob in blobs)
        return {
            'file_count': len(blobs),
            'total_size': total_size,
            'total_size_mb': round(total_size / 1024 / 1024, 2),
        }
