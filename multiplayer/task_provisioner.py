"""
Cloud task provisioner capability.

The orchestrator only talks to this narrow interface, so the session state
machine can be exercised against a mock instead of a real cloud API.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


class ProvisionerError(Exception):
    """The backend call failed or timed out; the outcome is unknown and may be retried."""


class TaskNotFoundError(ProvisionerError):
    """The task is already gone on the backend."""


@dataclass
class LaunchedTask:
    task_id: str
    session_url: str


class TaskProvisioner(ABC):

    @abstractmethod
    def launch_task(self, session_id: str, workspace) -> LaunchedTask:
        """Start one game server task for a session."""

    @abstractmethod
    def stop_task(self, task_id: str, reason: str = 'Session ended') -> None:
        """Stop a task. Raises TaskNotFoundError if it no longer exists."""

    @abstractmethod
    def describe_task(self, task_id: str) -> Optional[dict]:
        """Return backend status for a task, or None when unknown."""


def create_provisioner(config) -> TaskProvisioner:
    """Build the provisioner selected by PROVISIONER_BACKEND."""
    backend = config.get('PROVISIONER_BACKEND', 'ecs')

    if backend == 'ecs':
        from .fargate_manager import FargateTaskManager
        return FargateTaskManager(
            cluster=config['ECS_CLUSTER'],
            task_definition=config['ECS_TASK_DEFINITION'],
            container_name=config['ECS_CONTAINER_NAME'],
            subnets=config['ECS_SUBNETS'],
            security_groups=config['ECS_SECURITY_GROUPS'],
            region=config['AWS_REGION'],
            session_url_template=config['SESSION_URL_TEMPLATE'],
            timeout=config['PROVISIONER_TIMEOUT_SECONDS'],
        )
    elif backend == 'cloudrun':
        from .cloud_run_manager import CloudRunManager
        return CloudRunManager(
            project_id=config['GCP_PROJECT_ID'],
            region=config['GCP_REGION'],
            image=config['GAME_SERVER_IMAGE'],
            timeout=config['PROVISIONER_TIMEOUT_SECONDS'],
        )
    elif backend == 'docker':
        from .docker_manager import DockerTaskManager
        return DockerTaskManager(
            image=config['GAME_SERVER_IMAGE'],
            host=config['DOCKER_HOST_NAME'],
            container_port=config['DOCKER_CONTAINER_PORT'],
            timeout=config['PROVISIONER_TIMEOUT_SECONDS'],
        )

    raise ValueError(f"Unknown provisioner backend: {backend}")
