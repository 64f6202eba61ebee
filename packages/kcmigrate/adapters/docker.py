"""Docker and docker compose deployments (single host, replace-the-container)."""

import logging
from typing import List, Optional

from ..errors import AdapterError
from ..profile import DeploymentMode, Strategy
from .base import Deployment, DeploymentAdapter
from .process import CommandRunner

logger = logging.getLogger(__name__)


class DockerDeployment(DeploymentAdapter):
    """
    docker mode: pull, stop, remove, run with the configured run_args.
    docker-compose mode: the compose file must reference ${KEYCLOAK_VERSION}.
    """

    def __init__(self, profile, http_client=None, runner: Optional[CommandRunner] = None):
        super().__init__(profile, http_client)
        self.runner = runner or CommandRunner()
        self.settings = self.deployment.docker
        self.compose = self.deployment.mode == DeploymentMode.DOCKER_COMPOSE

    def required_tools(self) -> List[str]:
        return ["docker"]

    def current_version(self) -> Optional[str]:
        try:
            result = self.runner.run(
                ["docker", "inspect", "--format", "{{.Config.Image}}", self.settings.container_name],
                timeout=30,
            )
        except AdapterError as e:
            logger.warning(f"Could not inspect container: {e.message}")
            return None
        image = result.stdout.strip()
        return image.rsplit(":", 1)[1] if ":" in image else None

    def deploy(self, version: str, strategy: Strategy) -> Deployment:
        if strategy != Strategy.INPLACE:
            raise AdapterError(f"Docker deployment does not support {strategy.value}", code="STRATEGY_UNSUPPORTED")
        self._run_version(version)
        return Deployment(
            version=version,
            strategy=strategy,
            endpoint=self.deployment.health_url,
            service_url=self.deployment.service_url,
        )

    def rollback(self, prior: Deployment) -> Deployment:
        self._run_version(prior.version)
        return prior

    def _run_version(self, version: str) -> None:
        if self.compose:
            self._compose_up(version)
            return

        image = self.deployment.container.image_ref(version)
        name = self.settings.container_name
        logger.info(f"Replacing container {name} with {image}")
        self.runner.run(["docker", "pull", image], timeout=self.timeout)
        self.runner.run(["docker", "stop", name], timeout=120, check=False)
        self.runner.run(["docker", "rm", name], timeout=60, check=False)
        self.runner.run(
            ["docker", "run", "-d", "--name", name, *self.settings.run_args, image],
            timeout=self.timeout,
        )

    def _compose_up(self, version: str) -> None:
        if not self.settings.compose_file:
            raise AdapterError("docker-compose mode requires docker.compose_file", code="CONFIG_INVALID")
        base = ["docker", "compose", "-f", self.settings.compose_file]
        env = {"KEYCLOAK_VERSION": version}
        logger.info(f"docker compose up {self.settings.compose_service} at {version}")
        self.runner.run([*base, "pull", self.settings.compose_service], timeout=self.timeout, env=env)
        self.runner.run(
            [*base, "up", "-d", "--no-deps", "--force-recreate", self.settings.compose_service],
            timeout=self.timeout,
            env=env,
        )
