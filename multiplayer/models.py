import uuid
from datetime import datetime
from flask_sqlalchemy import SQLAlchemy

from shared.state_machine import SessionState, TERMINAL_STATES

db = SQLAlchemy()


def _isoformat(value: datetime):
    return value.isoformat() + 'Z' if value else None


class Workspace(db.Model):
    """Read-only mirror of the workspace owned by the workspace service."""
    __tablename__ = 'workspaces'

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.Integer, nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    engine_type = db.Column(db.String(50), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    sessions = db.relationship('MultiplayerSession', back_populates='workspace', lazy='dynamic')

    def to_summary(self):
        return {
            'id': self.id,
            'name': self.name,
            'engine_type': self.engine_type,
        }


class MultiplayerSession(db.Model):
    __tablename__ = 'multiplayer_sessions'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    workspace_id = db.Column(db.Integer, db.ForeignKey('workspaces.id'), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default=SessionState.ACTIVE.value, index=True)
    max_players = db.Column(db.Integer, nullable=False, default=8)
    current_players = db.Column(db.Integer, nullable=False, default=0)
    session_url = db.Column(db.String(500), nullable=True)
    fargate_task_arn = db.Column(db.String(500), nullable=True)
    expires_at = db.Column(db.DateTime, nullable=False)
    stopped_at = db.Column(db.DateTime, nullable=True)
    # Set while one request owns the teardown of this row
    teardown_started_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    workspace = db.relationship('Workspace', back_populates='sessions')

    __table_args__ = (
        # At most one live session per workspace
        db.Index(
            'uq_multiplayer_active_workspace',
            'workspace_id',
            unique=True,
            postgresql_where=db.text("status = 'active'"),
            sqlite_where=db.text("status = 'active'"),
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in [s.value for s in TERMINAL_STATES]

    def is_expired(self, now: datetime = None) -> bool:
        now = now or datetime.utcnow()
        return self.expires_at is not None and now > self.expires_at

    def is_live(self, now: datetime = None) -> bool:
        return self.status == SessionState.ACTIVE.value and not self.is_expired(now)

    def can_accept_players(self, now: datetime = None) -> bool:
        return self.is_live(now) and self.current_players < self.max_players

    def remaining_time(self, now: datetime = None) -> int:
        """Seconds until expiry, never negative."""
        now = now or datetime.utcnow()
        if self.is_terminal or not self.expires_at:
            return 0
        return max(0, int((self.expires_at - now).total_seconds()))

    def to_dict(self):
        return {
            'id': self.id,
            'workspace_id': self.workspace_id,
            'status': self.status,
            'max_players': self.max_players,
            'current_players': self.current_players,
            'session_url': self.session_url,
            'fargate_task_arn': self.fargate_task_arn,
            'expires_at': _isoformat(self.expires_at),
            'stopped_at': _isoformat(self.stopped_at),
            'created_at': _isoformat(self.created_at),
        }
