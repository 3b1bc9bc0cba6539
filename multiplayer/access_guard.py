from typing import Iterable, Optional

from .exceptions import AccessDenied, NotFound, UnsupportedEngine, ValidationError
from .models import MultiplayerSession, Workspace


class WorkspaceGuard:
    """Ownership and engine eligibility checks run before any session work."""

    def __init__(self, eligible_engines: Iterable[str] = ('playcanvas',)):
        self.eligible_engines = tuple(eligible_engines)

    def _check_owner(self, workspace: Workspace, company_id: int):
        if workspace.company_id != company_id:
            raise AccessDenied('Access denied to this workspace')

    def authorize_workspace(self, workspace_id: int, company_id: int) -> Workspace:
        workspace = Workspace.query.filter_by(id=workspace_id).first()
        if workspace is None:
            raise NotFound('Workspace not found')
        self._check_owner(workspace, company_id)
        return workspace

    def authorize_hosting(self, workspace_id: int, company_id: int) -> Workspace:
        """Workspace must exist, belong to the caller and run an eligible engine."""
        workspace = Workspace.query.filter_by(id=workspace_id).first()
        if workspace is None:
            raise ValidationError.for_field('workspace_id', 'The selected workspace id is invalid.')
        self._check_owner(workspace, company_id)

        if workspace.engine_type not in self.eligible_engines:
            raise UnsupportedEngine(workspace.engine_type)
        return workspace

    def find_session(self, session_id: str, company_id: int) -> Optional[MultiplayerSession]:
        """Return the caller's session, None if it does not exist."""
        session = MultiplayerSession.query.filter_by(id=session_id).first()
        if session is None:
            return None

        if session.workspace.company_id != company_id:
            raise AccessDenied('Access denied to this session')

        return session

    def authorize_session(self, session_id: str, company_id: int) -> MultiplayerSession:
        session = self.find_session(session_id, company_id)
        if session is None:
            raise NotFound('Session not found')
        return session
