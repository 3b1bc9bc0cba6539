"""
Cloud Run provisioner.

Uses Google Cloud Run Admin API to deploy one game server service per session.
"""
import logging
from typing import Optional

from .task_provisioner import LaunchedTask, ProvisionerError, TaskNotFoundError, TaskProvisioner

logger = logging.getLogger(__name__)


class CloudRunManager(TaskProvisioner):
    """Manages Cloud Run service deployments for multiplayer sessions."""

    def __init__(self, project_id: str, region: str = 'us-central1', image: str = '', timeout: int = 120):
        self.project_id = project_id
        self.region = region
        self.image = image
        self.timeout = timeout
        self._client = None

    @property
    def client(self):
        """Lazy-load Cloud Run client."""
        if self._client is None:
            from google.cloud import run_v2
            self._client = run_v2.ServicesClient()
        return self._client

    @property
    def parent(self) -> str:
        return f"projects/{self.project_id}/locations/{self.region}"

    @staticmethod
    def service_id(session_id: str) -> str:
        return f"session-{session_id}"

    def launch_task(self, session_id: str, workspace) -> LaunchedTask:
        from google.cloud import run_v2
        from google.api_core.exceptions import GoogleAPIError

        service = run_v2.Service(
            template=run_v2.RevisionTemplate(
                containers=[
                    run_v2.Container(
                        image=self.image,
                        ports=[run_v2.ContainerPort(container_port=8080)],
                        env=[
                            run_v2.EnvVar(name="SESSION_ID", value=session_id),
                            run_v2.EnvVar(name="WORKSPACE_ID", value=str(workspace.id)),
                            run_v2.EnvVar(name="COMPANY_ID", value=str(workspace.company_id)),
                            run_v2.EnvVar(name="PORT", value="8080"),
                        ],
                        resources=run_v2.ResourceRequirements(
                            limits={"memory": "512Mi", "cpu": "1"}
                        ),
                    )
                ],
                scaling=run_v2.RevisionScaling(
                    min_instance_count=1,
                    max_instance_count=1
                ),
            ),
            ingress=run_v2.IngressTraffic.INGRESS_TRAFFIC_ALL,
        )

        try:
            operation = self.client.create_service(
                parent=self.parent,
                service=service,
                service_id=self.service_id(session_id)
            )
            result = operation.result(timeout=self.timeout)
        except GoogleAPIError as e:
            raise ProvisionerError(f"Failed to deploy service: {e}") from e
        except TimeoutError as e:
            raise ProvisionerError(f"Timed out deploying service after {self.timeout}s") from e

        logger.info(f"Deployed Cloud Run service {result.name} for session {session_id}")
        return LaunchedTask(task_id=result.name, session_url=result.uri)

    def stop_task(self, task_id: str, reason: str = 'Session ended') -> None:
        from google.api_core.exceptions import NotFound, GoogleAPIError

        try:
            operation = self.client.delete_service(name=task_id)
            operation.result(timeout=self.timeout)
        except NotFound as e:
            logger.info(f"Service not found (already deleted): {task_id}")
            raise TaskNotFoundError(task_id) from e
        except GoogleAPIError as e:
            raise ProvisionerError(f"Failed to delete service: {e}") from e
        except TimeoutError as e:
            raise ProvisionerError(f"Timed out deleting service after {self.timeout}s") from e

        logger.info(f"Deleted Cloud Run service {task_id} ({reason})")

    def describe_task(self, task_id: str) -> Optional[dict]:
        from google.api_core.exceptions import GoogleAPIError

        try:
            service = self.client.get_service(name=task_id)
        except GoogleAPIError:
            return None

        return {
            "task_id": task_id,
            "url": service.uri,
            "ready": service.terminal_condition.state.name == "CONDITION_SUCCEEDED",
            "generation": service.generation,
        }
