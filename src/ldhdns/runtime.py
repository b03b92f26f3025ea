"""Docker client construction shared by the controller and dns modes."""

from __future__ import annotations

import docker
from docker.errors import DockerException

from .config.config_schema import Settings
from .errors import ContainerError


def docker_client(settings: Settings) -> docker.DockerClient:
    """Brief: Create a Docker client from settings.docker_url or DOCKER_HOST.

    Inputs:
      - settings: Settings; docker_url wins over the environment when set.

    Outputs:
      - docker.DockerClient

    Raises:
      - ContainerError: When the endpoint cannot be reached.
    """

    try:
        if settings.docker_url:
            return docker.DockerClient(base_url=settings.docker_url)
        return docker.from_env()
    except DockerException as exc:
        raise ContainerError(f"failed to connect to Docker API: {exc}") from exc
