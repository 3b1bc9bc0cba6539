import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

import redis
from redis.exceptions import LockError, RedisError
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .access_guard import WorkspaceGuard
from .exceptions import ProvisioningFailed, TeardownFailed, ValidationError
from .models import db, MultiplayerSession, Workspace
from .task_provisioner import ProvisionerError, TaskNotFoundError, TaskProvisioner
from shared.events import session_reused_event, session_started_event, state_changed_event
from shared.pubsub import PubSubClient
from shared.state_machine import SessionState, SessionStateMachine

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS = {
    'MULTIPLAYER_MIN_PLAYERS': 2,
    'MULTIPLAYER_MAX_PLAYERS': 16,
    'MULTIPLAYER_DEFAULT_MAX_PLAYERS': 8,
    'MULTIPLAYER_MIN_TTL_MINUTES': 10,
    'MULTIPLAYER_MAX_TTL_MINUTES': 120,
    'MULTIPLAYER_DEFAULT_TTL_MINUTES': 40,
    'START_LOCK_TIMEOUT_SECONDS': 180,
    'START_LOCK_WAIT_SECONDS': 150,
    'TEARDOWN_LEASE_SECONDS': 300,
}


def _as_int(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip('-').isdigit():
        return int(value.strip())
    return None


class SessionOrchestrator:
    """
    Owns the multiplayer session lifecycle:
    - Start a game server task for a workspace (at most one live per workspace)
    - Stop it explicitly, or lazily once its TTL has lapsed
    - Report status, company stats and active sessions

    Every liveness fact comes from the session table, so any number of
    orchestrator instances can serve requests side by side.
    """

    def __init__(
        self,
        provisioner: TaskProvisioner,
        guard: WorkspaceGuard,
        settings: dict = None,
        redis_client: redis.Redis = None,
        pubsub: PubSubClient = None,
    ):
        self.provisioner = provisioner
        self.guard = guard
        self.settings = dict(DEFAULT_SETTINGS)
        self.settings.update({k: v for k, v in (settings or {}).items() if k in DEFAULT_SETTINGS})
        self.redis = redis_client
        self.pubsub = pubsub

    # ==================== Validation ====================

    def validate_options(self, max_players=None, ttl_minutes=None) -> Tuple[int, int]:
        """Apply defaults and bounds to the optional start parameters."""
        errors = {}
        s = self.settings

        if max_players is None:
            max_players = s['MULTIPLAYER_DEFAULT_MAX_PLAYERS']
        else:
            value = _as_int(max_players)
            if value is None:
                errors['max_players'] = ['The max players must be an integer.']
            elif not s['MULTIPLAYER_MIN_PLAYERS'] <= value <= s['MULTIPLAYER_MAX_PLAYERS']:
                errors['max_players'] = [
                    f"The max players must be between {s['MULTIPLAYER_MIN_PLAYERS']} "
                    f"and {s['MULTIPLAYER_MAX_PLAYERS']}."
                ]
            max_players = value

        if ttl_minutes is None:
            ttl_minutes = s['MULTIPLAYER_DEFAULT_TTL_MINUTES']
        else:
            value = _as_int(ttl_minutes)
            if value is None:
                errors['ttl_minutes'] = ['The ttl minutes must be an integer.']
            elif not s['MULTIPLAYER_MIN_TTL_MINUTES'] <= value <= s['MULTIPLAYER_MAX_TTL_MINUTES']:
                errors['ttl_minutes'] = [
                    f"The ttl minutes must be between {s['MULTIPLAYER_MIN_TTL_MINUTES']} "
                    f"and {s['MULTIPLAYER_MAX_TTL_MINUTES']}."
                ]
            ttl_minutes = value

        if errors:
            raise ValidationError(errors)

        return max_players, ttl_minutes

    # ==================== Start ====================

    def start_session(
        self,
        workspace_id,
        company_id: int,
        max_players=None,
        ttl_minutes=None,
    ) -> Tuple[MultiplayerSession, bool]:
        """
        Start (or reuse) the multiplayer session of a workspace.

        Returns:
            Tuple of (session, created). ``created`` is False when a live
            session already existed and was returned unchanged.
        """
        errors = {}
        ws_id = _as_int(workspace_id)
        if workspace_id is None:
            errors['workspace_id'] = ['The workspace id field is required.']
        elif ws_id is None:
            errors['workspace_id'] = ['The workspace id must be an integer.']

        try:
            max_players, ttl_minutes = self.validate_options(max_players, ttl_minutes)
        except ValidationError as e:
            errors.update(e.errors)

        if errors:
            raise ValidationError(errors)

        workspace = self.guard.authorize_hosting(ws_id, company_id)

        with self._workspace_lock(workspace.id):
            existing = self._find_active(workspace.id)
            if existing is not None:
                if existing.is_live():
                    logger.info(f"Reusing live session {existing.id} for workspace {workspace.id}")
                    self._publish(session_reused_event(existing.id, workspace.id))
                    return existing, False

                # Active row past its TTL: retire it before launching a replacement
                self._teardown(existing, reason='Session expired')

            return self._launch(workspace, max_players, ttl_minutes)

    def _launch(self, workspace: Workspace, max_players: int, ttl_minutes: int) -> Tuple[MultiplayerSession, bool]:
        session_id = str(uuid.uuid4())

        try:
            launched = self.provisioner.launch_task(session_id, workspace)
        except ProvisionerError as e:
            logger.error(f"Failed to start multiplayer session for workspace {workspace.id}: {e}")
            raise ProvisioningFailed(workspace.id, str(e)) from e

        now = datetime.utcnow()
        session = MultiplayerSession(
            id=session_id,
            workspace_id=workspace.id,
            status=SessionState.ACTIVE.value,
            max_players=max_players,
            current_players=0,
            session_url=launched.session_url,
            fargate_task_arn=launched.task_id,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )

        try:
            db.session.add(session)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            # The task has no record; take it down so it cannot leak
            self._discard_task(launched.task_id, session_id)

            if isinstance(e, IntegrityError):
                winner = self._find_active(workspace.id)
                if winner is not None:
                    logger.info(
                        f"Lost start race for workspace {workspace.id}; returning session {winner.id}"
                    )
                    return winner, False

            logger.error(f"Failed to record session {session_id} for workspace {workspace.id}: {e}")
            raise ProvisioningFailed(workspace.id, 'could not record session') from e

        logger.info(
            f"Multiplayer session started: session={session.id} workspace={workspace.id} "
            f"task={session.fargate_task_arn} expires_at={session.expires_at.isoformat()}"
        )
        self._publish(session_started_event(
            session.id, workspace.id, session.session_url, session.expires_at.isoformat() + 'Z'
        ))
        return session, True

    def _discard_task(self, task_id: str, session_id: str):
        try:
            self.provisioner.stop_task(task_id, reason='Session record not persisted')
        except TaskNotFoundError:
            pass
        except ProvisionerError as e:
            logger.error(f"Orphaned task {task_id} for unrecorded session {session_id}: {e}")

    @contextmanager
    def _workspace_lock(self, workspace_id: int):
        """Serialize starts per workspace when redis is available.

        The unique index on active sessions still holds without it; the lock
        only keeps racing callers from launching a task that would be discarded.
        """
        if self.redis is None:
            yield
            return

        lock = self.redis.lock(
            f"multiplayer:workspace:{workspace_id}:start",
            timeout=self.settings['START_LOCK_TIMEOUT_SECONDS'],
            blocking_timeout=self.settings['START_LOCK_WAIT_SECONDS'],
        )
        try:
            acquired = lock.acquire()
        except RedisError as e:
            logger.warning(f"Start lock unavailable for workspace {workspace_id}, relying on unique index: {e}")
            yield
            return

        if not acquired:
            raise ProvisioningFailed(workspace_id, 'another start for this workspace is still in progress')

        try:
            yield
        finally:
            try:
                lock.release()
            except (LockError, RedisError) as e:
                logger.warning(f"Failed to release start lock for workspace {workspace_id}: {e}")

    # ==================== Stop ====================

    def stop_session(self, session_id: str, company_id: int) -> MultiplayerSession:
        """Stop a session. Stopping a terminal session is a no-op."""
        session = self.guard.authorize_session(session_id, company_id)

        if session.is_terminal:
            logger.info(f"Session {session.id} already {session.status}; nothing to stop")
            return session

        self._teardown(session, reason='Session stopped')
        return session

    def _teardown(self, session: MultiplayerSession, reason: str) -> bool:
        """Stop the backing task, then record the terminal state.

        Only the request that claims the row calls the provisioner. The row
        stays active when the provisioner fails for any reason other than the
        task being gone, so a later stop can retry.

        Returns:
            True if this call stopped the session, False if another request
            already had.
        """
        sm = SessionStateMachine.from_state_string(session.status)
        old_state = sm.state.value
        new_state = sm.transition('stop')
        session_id = session.id
        task_arn = session.fargate_task_arn

        if not self._claim_teardown(session_id):
            if session.is_terminal:
                logger.info(f"Session {session_id} was stopped by another request")
                return False
            raise TeardownFailed(session_id, 'teardown already in progress')

        if task_arn:
            try:
                self.provisioner.stop_task(task_arn, reason=reason)
            except TaskNotFoundError:
                logger.info(f"Task {task_arn} for session {session_id} already gone")
            except ProvisionerError as e:
                logger.error(f"Failed to stop multiplayer session {session_id}: {e}")
                self._release_teardown(session_id)
                raise TeardownFailed(session_id, str(e)) from e

        try:
            updated = MultiplayerSession.query.filter_by(
                id=session_id,
                status=SessionState.ACTIVE.value
            ).update({
                'status': new_state.value,
                'stopped_at': datetime.utcnow(),
                'teardown_started_at': None,
            }, synchronize_session=False)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Task {task_arn} stopped but session {session_id} could not be recorded: {e}")
            self._release_teardown(session_id)
            raise TeardownFailed(session_id, 'could not record stopped session') from e

        if updated != 1:
            logger.info(f"Session {session_id} was stopped by another request")
            return False

        logger.info(f"Multiplayer session stopped: session={session_id} task={task_arn} reason={reason}")
        self._publish(state_changed_event(session_id, session.workspace_id, old_state, new_state.value, reason))
        return True

    def _claim_teardown(self, session_id: str) -> bool:
        """Mark an active row as being torn down; False if another request holds it."""
        now = datetime.utcnow()
        lease_expired = now - timedelta(seconds=self.settings['TEARDOWN_LEASE_SECONDS'])
        try:
            claimed = MultiplayerSession.query.filter(
                MultiplayerSession.id == session_id,
                MultiplayerSession.status == SessionState.ACTIVE.value,
                or_(
                    MultiplayerSession.teardown_started_at.is_(None),
                    MultiplayerSession.teardown_started_at < lease_expired
                )
            ).update({'teardown_started_at': now}, synchronize_session=False)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Failed to claim session {session_id} for teardown: {e}")
            raise TeardownFailed(session_id, 'could not claim session for teardown') from e
        return claimed == 1

    def _release_teardown(self, session_id: str):
        try:
            MultiplayerSession.query.filter_by(id=session_id).update(
                {'teardown_started_at': None}, synchronize_session=False
            )
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.warning(f"Teardown claim on session {session_id} left to expire: {e}")

    # ==================== Queries ====================

    def get_session_status(self, session_id: str, company_id: int) -> dict:
        session = self.guard.find_session(session_id, company_id)
        if session is None:
            return {'exists': False, 'status': 'not_found'}

        if session.status == SessionState.ACTIVE.value and session.is_expired():
            try:
                self._teardown(session, reason='Session expired')
            except TeardownFailed as e:
                logger.warning(f"Expired session {session.id} left active: {e.reason}")

        return {
            'exists': True,
            'status': session.status,
            'session_url': session.session_url,
            'current_players': session.current_players,
            'max_players': session.max_players,
            'expires_at': session.expires_at.isoformat() + 'Z',
            'remaining_time': session.remaining_time(),
            'can_accept_players': session.can_accept_players(),
        }

    def _company_sessions(self, company_id: int):
        return MultiplayerSession.query.join(Workspace).filter(Workspace.company_id == company_id)

    def get_stats(self, company_id: int) -> dict:
        """Counts for the caller's company. Reads only; lapsed sessions are not swept here."""
        today = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        tomorrow = today + timedelta(days=1)

        sessions = self._company_sessions(company_id)
        return {
            'active_sessions': sessions.filter(
                MultiplayerSession.status == SessionState.ACTIVE.value
            ).count(),
            'total_sessions_today': sessions.filter(
                MultiplayerSession.created_at >= today,
                MultiplayerSession.created_at < tomorrow
            ).count(),
            'expired_sessions': sessions.filter(
                MultiplayerSession.status == SessionState.EXPIRED.value
            ).count(),
        }

    def list_active_sessions(self, company_id: int) -> List[MultiplayerSession]:
        return self._company_sessions(company_id).filter(
            MultiplayerSession.status == SessionState.ACTIVE.value
        ).order_by(MultiplayerSession.created_at.desc()).all()

    def describe_session_task(self, session_id: str, company_id: int) -> Optional[dict]:
        session = self.guard.authorize_session(session_id, company_id)
        if not session.fargate_task_arn:
            return None
        return self.provisioner.describe_task(session.fargate_task_arn)

    def _find_active(self, workspace_id: int) -> Optional[MultiplayerSession]:
        return MultiplayerSession.query.filter_by(
            workspace_id=workspace_id,
            status=SessionState.ACTIVE.value
        ).first()

    # ==================== Sweep ====================

    def sweep_expired_sessions(self, now: datetime = None) -> int:
        """Stop every active session past its TTL. Meant for an external scheduler."""
        now = now or datetime.utcnow()
        expired = MultiplayerSession.query.filter(
            MultiplayerSession.status == SessionState.ACTIVE.value,
            MultiplayerSession.expires_at < now
        ).all()

        cleaned_up = 0
        for session in expired:
            try:
                if self._teardown(session, reason='Session expired'):
                    cleaned_up += 1
            except TeardownFailed as e:
                logger.warning(f"Sweep could not stop session {session.id}: {e.reason}")

        logger.info(f"Cleaned up {cleaned_up} of {len(expired)} expired multiplayer sessions")
        return cleaned_up

    def _publish(self, event):
        if self.pubsub is not None:
            self.pubsub.publish_session_event(event)
