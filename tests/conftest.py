"""
Pytest configuration and fixtures for multiplayer session host tests.
"""
import os
import sys
import uuid
from datetime import datetime, timedelta

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# Set testing environment before importing app
os.environ['FLASK_ENV'] = 'testing'

from multiplayer.app import create_app
from multiplayer.blob_store import LocalBlobStore
from multiplayer.models import db, MultiplayerSession, Workspace
from multiplayer.task_provisioner import LaunchedTask, TaskProvisioner

COMPANY_ID = 1
OTHER_COMPANY_ID = 2


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app('testing')
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(autouse=True)
def clean_db(app):
    """Clear all tables before each test."""
    with app.app_context():
        db.session.remove()
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
    yield


@pytest.fixture
def auth_headers():
    return {'X-User-Id': '10', 'X-Company-Id': str(COMPANY_ID)}


@pytest.fixture
def other_auth_headers():
    return {'X-User-Id': '20', 'X-Company-Id': str(OTHER_COMPANY_ID)}


@pytest.fixture
def make_workspace(app):
    """Factory that inserts a workspace row."""
    def _make(name, company_id=COMPANY_ID, engine_type='playcanvas'):
        with app.app_context():
            workspace = Workspace(company_id=company_id, name=name, engine_type=engine_type)
            db.session.add(workspace)
            db.session.commit()
            db.session.refresh(workspace)
            return workspace
    return _make


@pytest.fixture
def workspace(make_workspace):
    """A PlayCanvas workspace owned by the test company."""
    return make_workspace('Space Racer')


@pytest.fixture
def unreal_workspace(make_workspace):
    return make_workspace('Castle Siege', engine_type='unreal')


@pytest.fixture
def other_workspace(make_workspace):
    """A PlayCanvas workspace owned by another company."""
    return make_workspace('Rival Arena', company_id=OTHER_COMPANY_ID)


@pytest.fixture
def make_session(app):
    """Factory that inserts a session row directly."""
    def _make(workspace_id, status='active', expires_in=timedelta(minutes=30), **kwargs):
        session_id = kwargs.pop('id', str(uuid.uuid4()))
        with app.app_context():
            session = MultiplayerSession(
                id=session_id,
                workspace_id=workspace_id,
                status=status,
                max_players=kwargs.pop('max_players', 8),
                current_players=kwargs.pop('current_players', 0),
                session_url=kwargs.pop('session_url', f'https://{session_id}.play.test'),
                fargate_task_arn=kwargs.pop(
                    'fargate_task_arn', f'arn:aws:ecs:us-east-1:123456789012:task/{session_id}'
                ),
                expires_at=datetime.utcnow() + expires_in,
                **kwargs
            )
            db.session.add(session)
            db.session.commit()
            db.session.refresh(session)
            return session
    return _make


@pytest.fixture
def provisioner(app, mocker):
    """Mock task provisioner swapped into the orchestrator."""
    mock = mocker.MagicMock(spec=TaskProvisioner)

    def launch(session_id, workspace):
        return LaunchedTask(
            task_id=f'arn:aws:ecs:us-east-1:123456789012:task/{session_id}',
            session_url=f'https://{session_id}.play.test',
        )

    mock.launch_task.side_effect = launch
    mock.stop_task.return_value = None
    mocker.patch.object(app.orchestrator, 'provisioner', mock)
    return mock


@pytest.fixture(autouse=True)
def blob_store(app, tmp_path, mocker):
    """Filesystem blob store rooted in a per-test temp dir."""
    store = LocalBlobStore(root=str(tmp_path / 'storage'), base_url='http://testserver/storage')
    mocker.patch.object(app.session_storage, 'blob_store', store)
    return store


@pytest.fixture
def mock_pubsub(app, mocker):
    """Mock event publisher."""
    mock = mocker.MagicMock()
    mocker.patch.object(app.orchestrator, 'pubsub', mock)
    return mock
