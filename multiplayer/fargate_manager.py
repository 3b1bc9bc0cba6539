"""
ECS Fargate provisioner.

Runs one game server task per multiplayer session through the ECS API.
"""
import logging
from typing import Optional, Sequence

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .task_provisioner import LaunchedTask, ProvisionerError, TaskNotFoundError, TaskProvisioner

logger = logging.getLogger(__name__)

# ECS answers stop_task on an unknown task ARN with one of these
TASK_GONE_ERROR_CODES = ('InvalidParameterException', 'ResourceNotFoundException')


class FargateTaskManager(TaskProvisioner):
    """Manages Fargate tasks for multiplayer sessions."""

    def __init__(
        self,
        cluster: str,
        task_definition: str,
        container_name: str,
        subnets: Sequence[str] = (),
        security_groups: Sequence[str] = (),
        region: str = 'us-east-1',
        session_url_template: str = 'https://{session_id}.play.localhost',
        timeout: int = 30,
        client=None,
    ):
        self.cluster = cluster
        self.task_definition = task_definition
        self.container_name = container_name
        self.subnets = list(subnets)
        self.security_groups = list(security_groups)
        self.region = region
        self.session_url_template = session_url_template
        self.timeout = timeout
        self._client = client

    @property
    def client(self):
        """Lazy-load ECS client with bounded timeouts."""
        if self._client is None:
            self._client = boto3.client(
                'ecs',
                region_name=self.region,
                config=BotoConfig(
                    connect_timeout=self.timeout,
                    read_timeout=self.timeout,
                    retries={'max_attempts': 2, 'mode': 'standard'},
                ),
            )
        return self._client

    def launch_task(self, session_id: str, workspace) -> LaunchedTask:
        try:
            result = self.client.run_task(
                cluster=self.cluster,
                taskDefinition=self.task_definition,
                launchType='FARGATE',
                count=1,
                networkConfiguration={
                    'awsvpcConfiguration': {
                        'subnets': self.subnets,
                        'securityGroups': self.security_groups,
                        'assignPublicIp': 'ENABLED',
                    }
                },
                overrides={
                    'containerOverrides': [
                        {
                            'name': self.container_name,
                            'environment': [
                                {'name': 'SESSION_ID', 'value': session_id},
                                {'name': 'WORKSPACE_ID', 'value': str(workspace.id)},
                                {'name': 'COMPANY_ID', 'value': str(workspace.company_id)},
                            ],
                        }
                    ]
                },
                tags=[
                    {'key': 'SessionId', 'value': session_id},
                    {'key': 'WorkspaceId', 'value': str(workspace.id)},
                    {'key': 'Service', 'value': 'PlayCanvasMultiplayer'},
                ],
            )
        except (ClientError, BotoCoreError) as e:
            raise ProvisionerError(f"Failed to start Fargate task: {e}") from e

        tasks = result.get('tasks') or []
        if not tasks:
            failures = result.get('failures') or []
            reasons = ', '.join(f.get('reason', 'unknown') for f in failures) or 'no tasks were started'
            raise ProvisionerError(f"Failed to start Fargate task: {reasons}")

        task_arn = tasks[0]['taskArn']
        logger.info(f"Started Fargate task {task_arn} for session {session_id}")

        return LaunchedTask(
            task_id=task_arn,
            session_url=self.session_url_template.format(session_id=session_id),
        )

    def stop_task(self, task_id: str, reason: str = 'Session ended') -> None:
        try:
            self.client.stop_task(cluster=self.cluster, task=task_id, reason=reason)
        except ClientError as e:
            code = e.response.get('Error', {}).get('Code')
            if code in TASK_GONE_ERROR_CODES:
                logger.info(f"Fargate task already stopped or not found: {task_id}")
                raise TaskNotFoundError(task_id) from e
            raise ProvisionerError(f"Failed to stop Fargate task: {e}") from e
        except BotoCoreError as e:
            raise ProvisionerError(f"Failed to stop Fargate task: {e}") from e

        logger.info(f"Stopped Fargate task {task_id} ({reason})")

    def describe_task(self, task_id: str) -> Optional[dict]:
        try:
            result = self.client.describe_tasks(cluster=self.cluster, tasks=[task_id])
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Failed to describe Fargate task {task_id}: {e}")
            return None

        tasks = result.get('tasks') or []
        if not tasks:
            return None

        task = tasks[0]
        return {
            'task_id': task['taskArn'],
            'last_status': task.get('lastStatus'),
            'desired_status': task.get('desiredStatus'),
            'stopped_reason': task.get('stoppedReason'),
        }
