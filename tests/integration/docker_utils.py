"""Docker helpers for the Redis integration tests."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any
from urllib.parse import urlparse

REDIS_IMAGE = "redis:7-alpine"
REDIS_PORT = "6379/tcp"


def get_docker_client() -> Any:
    """Create a Docker client from environment settings."""
    import docker

    return docker.from_env()


def published_url(client: Any, container: Any, port: str, scheme: str) -> str:
    """URL of the host port Docker bound to ``port`` of ``container``."""
    container.reload()
    bindings = container.attrs["NetworkSettings"]["Ports"].get(port)
    if not bindings:
        raise RuntimeError(f"Port {port} not published by {container.short_id}")

    # Local sockets publish on localhost; a remote daemon publishes on its own host
    host = urlparse(client.api.base_url).hostname
    if client.api.base_url.startswith(("unix://", "npipe://", "http+docker://")) or not host:
        host = "localhost"
    return f"{scheme}://{host}:{bindings[0]['HostPort']}"


@contextmanager
def redis_server(client: Any, image: str = REDIS_IMAGE) -> Iterator[str]:
    """Run a throwaway Redis container and yield its connection URL."""
    container = client.containers.run(
        image,
        detach=True,
        ports={REDIS_PORT: None},
        labels={"electorate.tests": "1"},
    )
    try:
        yield published_url(client, container, REDIS_PORT, "redis") + "/0"
    finally:
        container.remove(force=True, v=True)
