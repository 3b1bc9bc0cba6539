"""
Docker provisioner for local development.

Runs the game server image as a detached container on the local Docker
daemon and waits for it to answer on its published port.
"""
import logging
import subprocess
import time
from typing import Optional

import requests

from .task_provisioner import LaunchedTask, ProvisionerError, TaskNotFoundError, TaskProvisioner

logger = logging.getLogger(__name__)


class DockerTaskManager(TaskProvisioner):

    def __init__(self, image: str, host: str = 'localhost', container_port: int = 8080,
                 timeout: int = 30, health_path: str = '/health'):
        self.image = image
        self.host = host
        self.container_port = container_port
        self.timeout = timeout
        self.health_path = health_path

    def _docker(self, *args, timeout: int = None) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                ['docker', *args],
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout
            )
        except subprocess.TimeoutExpired as e:
            raise ProvisionerError(f"docker {args[0]} timed out after {e.timeout}s") from e
        except OSError as e:
            raise ProvisionerError(f"docker unavailable: {e}") from e

    def launch_task(self, session_id: str, workspace) -> LaunchedTask:
        container_name = f"session-{session_id}"
        result = self._docker(
            'run', '-d',
            '--name', container_name,
            '-p', str(self.container_port),
            '-e', f'SESSION_ID={session_id}',
            '-e', f'WORKSPACE_ID={workspace.id}',
            '-e', f'COMPANY_ID={workspace.company_id}',
            '-e', f'PORT={self.container_port}',
            self.image
        )
        if result.returncode != 0:
            raise ProvisionerError(f"Docker error: {result.stderr.strip()}")

        container_id = result.stdout.strip()

        try:
            host_port = self._published_port(container_id)
            session_url = f"http://{self.host}:{host_port}"
            self._wait_until_ready(session_url)
        except ProvisionerError:
            self._docker('rm', '-f', container_id)
            raise

        logger.info(f"Container {container_id[:12]} started for session {session_id} at {session_url}")
        return LaunchedTask(task_id=container_id, session_url=session_url)

    def _published_port(self, container_id: str) -> int:
        result = self._docker('port', container_id, str(self.container_port))
        if result.returncode != 0 or not result.stdout.strip():
            raise ProvisionerError(f"Container {container_id[:12]} has no published port")
        # "0.0.0.0:49153" (one line per address family)
        first = result.stdout.strip().splitlines()[0]
        return int(first.rsplit(':', 1)[1])

    def _wait_until_ready(self, session_url: str, poll_interval: float = 0.5):
        deadline = time.time() + self.timeout
        while time.time() < deadline:
            try:
                resp = requests.get(f"{session_url}{self.health_path}", timeout=1)
                if resp.status_code == 200:
                    return
            except requests.exceptions.RequestException:
                pass
            time.sleep(poll_interval)
        raise ProvisionerError(f"Game server at {session_url} not ready after {self.timeout}s")

    def stop_task(self, task_id: str, reason: str = 'Session ended') -> None:
        result = self._docker('rm', '-f', task_id)
        if result.returncode != 0:
            if 'No such container' in result.stderr:
                raise TaskNotFoundError(task_id)
            raise ProvisionerError(f"Failed to stop container: {result.stderr.strip()}")
        logger.info(f"Removed container {task_id[:12]} ({reason})")

    def describe_task(self, task_id: str) -> Optional[dict]:
        result = self._docker('inspect', '--format', '{{.State.Status}}', task_id)
        if result.returncode != 0:
            return None
        return {'task_id': task_id, 'last_status': result.stdout.strip()}
