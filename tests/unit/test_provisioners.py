"""
Unit tests for the task provisioner backends.
ECS calls are checked with botocore's Stubber; docker and Cloud Run with mocks.
"""
import subprocess
from types import SimpleNamespace

import boto3
import pytest
from botocore.stub import Stubber

from multiplayer.docker_manager import DockerTaskManager
from multiplayer.fargate_manager import FargateTaskManager
from multiplayer.task_provisioner import (
    LaunchedTask,
    ProvisionerError,
    TaskNotFoundError,
    create_provisioner
)

TASK_ARN = 'arn:aws:ecs:us-east-1:123456789012:task/playcanvas-multiplayer/abc123'
WORKSPACE = SimpleNamespace(id=42, company_id=7)


@pytest.fixture
def ecs_client():
    return boto3.client(
        'ecs',
        region_name='us-east-1',
        aws_access_key_id='testing',
        aws_secret_access_key='testing'
    )


@pytest.fixture
def fargate(ecs_client):
    return FargateTaskManager(
        cluster='playcanvas-multiplayer',
        task_definition='playcanvas-multiplayer:3',
        container_name='playcanvas-server',
        subnets=['subnet-123'],
        security_groups=['sg-456'],
        session_url_template='https://{session_id}.play.example.com',
        client=ecs_client
    )


class TestFargateTaskManager:
    """Tests for FargateTaskManager against stubbed ECS responses."""

    def test_launch_task(self, fargate, ecs_client):
        with Stubber(ecs_client) as stubber:
            stubber.add_response(
                'run_task',
                {'tasks': [{'taskArn': TASK_ARN}], 'failures': []},
                {
                    'cluster': 'playcanvas-multiplayer',
                    'taskDefinition': 'playcanvas-multiplayer:3',
                    'launchType': 'FARGATE',
                    'count': 1,
                    'networkConfiguration': {
                        'awsvpcConfiguration': {
                            'subnets': ['subnet-123'],
                            'securityGroups': ['sg-456'],
                            'assignPublicIp': 'ENABLED',
                        }
                    },
                    'overrides': {
                        'containerOverrides': [{
                            'name': 'playcanvas-server',
                            'environment': [
                                {'name': 'SESSION_ID', 'value': 'sess-1'},
                                {'name': 'WORKSPACE_ID', 'value': '42'},
                                {'name': 'COMPANY_ID', 'value': '7'},
                            ],
                        }]
                    },
                    'tags': [
                        {'key': 'SessionId', 'value': 'sess-1'},
                        {'key': 'WorkspaceId', 'value': '42'},
                        {'key': 'Service', 'value': 'PlayCanvasMultiplayer'},
                    ],
                }
            )
            launched = fargate.launch_task('sess-1', WORKSPACE)
            stubber.assert_no_pending_responses()

        assert launched == LaunchedTask(task_id=TASK_ARN, session_url='https://sess-1.play.example.com')

    def test_launch_task_reports_failures(self, fargate, ecs_client):
        with Stubber(ecs_client) as stubber:
            stubber.add_response('run_task', {
                'tasks': [],
                'failures': [{'arn': 'arn:aws:ecs:capacity', 'reason': 'RESOURCE:MEMORY'}]
            })
            with pytest.raises(ProvisionerError) as exc_info:
                fargate.launch_task('sess-1', WORKSPACE)

        assert 'RESOURCE:MEMORY' in str(exc_info.value)

    def test_launch_task_client_error(self, fargate, ecs_client):
        with Stubber(ecs_client) as stubber:
            stubber.add_client_error('run_task', service_error_code='AccessDeniedException')
            with pytest.raises(ProvisionerError):
                fargate.launch_task('sess-1', WORKSPACE)

    def test_stop_task(self, fargate, ecs_client):
        with Stubber(ecs_client) as stubber:
            stubber.add_response(
                'stop_task',
                {'task': {'taskArn': TASK_ARN, 'desiredStatus': 'STOPPED'}},
                {'cluster': 'playcanvas-multiplayer', 'task': TASK_ARN, 'reason': 'Session stopped'}
            )
            fargate.stop_task(TASK_ARN, reason='Session stopped')
            stubber.assert_no_pending_responses()

    @pytest.mark.parametrize('code', ['InvalidParameterException', 'ResourceNotFoundException'])
    def test_stop_task_already_gone(self, fargate, ecs_client, code):
        with Stubber(ecs_client) as stubber:
            stubber.add_client_error('stop_task', service_error_code=code, service_message='The referenced task was not found.')
            with pytest.raises(TaskNotFoundError):
                fargate.stop_task(TASK_ARN)

    def test_stop_task_other_error_is_retryable(self, fargate, ecs_client):
        with Stubber(ecs_client) as stubber:
            stubber.add_client_error('stop_task', service_error_code='ThrottlingException')
            with pytest.raises(ProvisionerError) as exc_info:
                fargate.stop_task(TASK_ARN)

        assert not isinstance(exc_info.value, TaskNotFoundError)

    def test_describe_task(self, fargate, ecs_client):
        with Stubber(ecs_client) as stubber:
            stubber.add_response(
                'describe_tasks',
                {'tasks': [{'taskArn': TASK_ARN, 'lastStatus': 'RUNNING', 'desiredStatus': 'RUNNING'}]},
                {'cluster': 'playcanvas-multiplayer', 'tasks': [TASK_ARN]}
            )
            task = fargate.describe_task(TASK_ARN)

        assert task == {
            'task_id': TASK_ARN,
            'last_status': 'RUNNING',
            'desired_status': 'RUNNING',
            'stopped_reason': None,
        }

    def test_describe_unknown_task(self, fargate, ecs_client):
        with Stubber(ecs_client) as stubber:
            stubber.add_response('describe_tasks', {'tasks': [], 'failures': [{'arn': TASK_ARN, 'reason': 'MISSING'}]})
            assert fargate.describe_task(TASK_ARN) is None


def _completed(returncode=0, stdout='', stderr=''):
    return subprocess.CompletedProcess(args=['docker'], returncode=returncode, stdout=stdout, stderr=stderr)


class TestDockerTaskManager:
    """Tests for DockerTaskManager with subprocess and requests mocked."""

    @pytest.fixture
    def docker(self):
        return DockerTaskManager(image='playcanvas-server:latest', host='localhost', timeout=2)

    def test_launch_task(self, docker, mocker):
        run = mocker.patch('multiplayer.docker_manager.subprocess.run', side_effect=[
            _completed(stdout='c0ffee123456789\n'),
            _completed(stdout='0.0.0.0:49153\n[::]:49153\n'),
        ])
        mocker.patch('multiplayer.docker_manager.requests.get', return_value=mocker.Mock(status_code=200))

        launched = docker.launch_task('sess-1', WORKSPACE)

        assert launched == LaunchedTask(task_id='c0ffee123456789', session_url='http://localhost:49153')
        run_args = run.call_args_list[0][0][0]
        assert run_args[:3] == ['docker', 'run', '-d']
        assert 'SESSION_ID=sess-1' in run_args

    def test_launch_failure_raises(self, docker, mocker):
        mocker.patch('multiplayer.docker_manager.subprocess.run',
                     return_value=_completed(returncode=125, stderr='Unable to find image'))

        with pytest.raises(ProvisionerError) as exc_info:
            docker.launch_task('sess-1', WORKSPACE)

        assert 'Unable to find image' in str(exc_info.value)

    def test_launch_removes_container_that_never_gets_ready(self, docker, mocker):
        run = mocker.patch('multiplayer.docker_manager.subprocess.run', side_effect=[
            _completed(stdout='c0ffee123456789\n'),
            _completed(stdout='0.0.0.0:49153\n'),
            _completed(),
        ])
        mocker.patch.object(docker, '_wait_until_ready', side_effect=ProvisionerError('not ready'))

        with pytest.raises(ProvisionerError):
            docker.launch_task('sess-1', WORKSPACE)

        assert run.call_args_list[-1][0][0] == ['docker', 'rm', '-f', 'c0ffee123456789']

    def test_docker_missing(self, docker, mocker):
        mocker.patch('multiplayer.docker_manager.subprocess.run', side_effect=FileNotFoundError('docker'))

        with pytest.raises(ProvisionerError):
            docker.stop_task('c0ffee')

    def test_stop_unknown_container(self, docker, mocker):
        mocker.patch('multiplayer.docker_manager.subprocess.run',
                     return_value=_completed(returncode=1, stderr='Error: No such container: c0ffee'))

        with pytest.raises(TaskNotFoundError):
            docker.stop_task('c0ffee')

    def test_describe_task(self, docker, mocker):
        mocker.patch('multiplayer.docker_manager.subprocess.run', return_value=_completed(stdout='running\n'))
        assert docker.describe_task('c0ffee') == {'task_id': 'c0ffee', 'last_status': 'running'}


class TestCloudRunManager:
    """Tests for CloudRunManager error mapping."""

    @pytest.fixture
    def cloud_run(self, mocker):
        from multiplayer.cloud_run_manager import CloudRunManager
        manager = CloudRunManager(project_id='test-project', image='gcr.io/test/server', timeout=5)
        manager._client = mocker.MagicMock()
        return manager

    def test_stop_missing_service(self, cloud_run):
        from google.api_core.exceptions import NotFound
        cloud_run.client.delete_service.side_effect = NotFound('service gone')

        with pytest.raises(TaskNotFoundError):
            cloud_run.stop_task('projects/test-project/locations/us-central1/services/session-1')

    def test_launch_returns_service_url(self, cloud_run):
        operation = cloud_run.client.create_service.return_value
        operation.result.return_value = SimpleNamespace(
            name='projects/test-project/locations/us-central1/services/session-sess-1',
            uri='https://session-sess-1-abc.a.run.app'
        )

        launched = cloud_run.launch_task('sess-1', WORKSPACE)

        assert launched.session_url == 'https://session-sess-1-abc.a.run.app'
        kwargs = cloud_run.client.create_service.call_args.kwargs
        assert kwargs['service_id'] == 'session-sess-1'
        assert kwargs['parent'] == 'projects/test-project/locations/us-central1'


class TestCreateProvisioner:
    """Tests for backend selection."""

    def test_selects_backend(self, app):
        config = dict(app.config)

        config['PROVISIONER_BACKEND'] = 'ecs'
        assert isinstance(create_provisioner(config), FargateTaskManager)

        config['PROVISIONER_BACKEND'] = 'docker'
        assert isinstance(create_provisioner(config), DockerTaskManager)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_provisioner({'PROVISIONER_BACKEND': 'kubernetes'})
