import logging
import os
import time
from dataclasses import dataclass

import docker
import httpx
from docker.errors import DockerException, NotFound

from arena.config import settings
from arena.errors import SandboxUnavailable

logger = logging.getLogger(__name__)

MANAGED_LABEL = "arena.managed"
CHALLENGE_LABEL = "arena.challenge"
USER_LABEL = "arena.user"


@dataclass
class ContainerInfo:
    container_id: str
    image: str
    ip_address: str
    port: int | None
    url: str


def _get_docker_client(timeout: int):
    """Try multiple Docker socket locations (macOS Docker Desktop compatibility)."""
    # Try default first (respects DOCKER_HOST env var)
    try:
        client = docker.from_env(timeout=timeout)
        client.ping()
        return client
    except DockerException:
        pass

    # macOS Docker socket locations (Colima, Docker Desktop, etc.)
    home = os.path.expanduser("~")
    socket_paths = [
        f"unix://{home}/.config/colima/default/docker.sock",
        f"unix://{home}/.colima/default/docker.sock",
        f"unix://{home}/.docker/run/docker.sock",
        "unix:///var/run/docker.sock",
        f"unix://{home}/Library/Containers/com.docker.docker/Data/docker.sock",
    ]

    for sock in socket_paths:
        try:
            client = docker.DockerClient(base_url=sock, timeout=timeout)
            client.ping()
            return client
        except DockerException:
            continue

    raise DockerException("Could not connect to Docker daemon")


def check_endpoint(url: str, timeout: float = 5) -> bool:
    """Check if the sandbox is answering HTTP."""
    try:
        resp = httpx.get(url, timeout=timeout, follow_redirects=True)
        return resp.status_code < 500
    except httpx.HTTPError:
        return False


class DockerManager:
    """Container runtime for sandboxes. Every call carries the client timeout."""

    def __init__(
        self,
        timeout: int = settings.docker_timeout_seconds,
        network_name: str = settings.docker_network,
        memory_limit: str = settings.sandbox_memory_limit,
        pids_limit: int = settings.sandbox_pids_limit,
        http_check: bool = settings.sandbox_http_check,
    ):
        self.client = _get_docker_client(timeout)
        self.network_name = network_name
        self.memory_limit = memory_limit
        self.pids_limit = pids_limit
        self.http_check = http_check
        self._ensure_network()

    def _ensure_network(self):
        """Create isolated network for sandboxes if it doesn't exist."""
        try:
            self.client.networks.get(self.network_name)
        except NotFound:
            self.client.networks.create(
                self.network_name,
                driver="bridge",
                internal=False,
            )

    def run_options(self, port: int | None) -> dict:
        """Resource limits and hardening applied to every sandbox."""
        return {
            "detach": True,
            "ports": {f"{port}/tcp": None} if port else None,
            "publish_all_ports": True,
            "mem_limit": self.memory_limit,
            "memswap_limit": self.memory_limit,
            "pids_limit": self.pids_limit,
            "cap_drop": ["ALL"],
            "read_only": True,
            "tmpfs": {"/tmp": "rw,noexec,nosuid,size=64m"},
            "security_opt": ["no-new-privileges:true"],
            "network": self.network_name,
            "restart_policy": {"Name": "no"},
        }

    def create_and_start(
        self,
        image: str,
        name: str,
        env: dict[str, str] | None = None,
        labels: dict[str, str] | None = None,
        port: int | None = None,
    ) -> ContainerInfo:
        """Create and start a hardened container. Raises SandboxUnavailable."""
        container = None
        all_labels = {MANAGED_LABEL: "true", **(labels or {})}
        try:
            container = self.client.containers.create(
                image,
                name=name,
                environment=env or {},
                labels=all_labels,
                **self.run_options(port),
            )
            container.start()

            # Wait for container to be ready
            for _ in range(10):
                container.reload()
                if container.status == "running":
                    break
                time.sleep(0.5)

            if container.status != "running":
                raise SandboxUnavailable(
                    f"Container {name} stuck in state {container.status!r}"
                )

            return self._connection_info(container, image, port)

        except (DockerException, OSError) as e:
            self._discard(container)
            raise SandboxUnavailable(f"Failed to start {image}: {e}") from e
        except SandboxUnavailable:
            self._discard(container)
            raise

    def _connection_info(self, container, image: str, port: int | None) -> ContainerInfo:
        ports = container.attrs.get("NetworkSettings", {}).get("Ports", {}) or {}
        wanted = f"{port}/tcp" if port else next((k for k, v in ports.items() if v), None)
        if wanted and ports.get(wanted):
            host_port = int(ports[wanted][0]["HostPort"])
            return ContainerInfo(
                container_id=container.id,
                image=image,
                ip_address="127.0.0.1",
                port=host_port,
                url=f"http://127.0.0.1:{host_port}",
            )
        return ContainerInfo(
            container_id=container.id, image=image, ip_address="127.0.0.1", port=None, url=""
        )

    def _discard(self, container):
        """Remove a half-created container after a failed start."""
        if container is None:
            return
        try:
            container.remove(force=True, v=True)
        except (DockerException, OSError) as e:
            logger.error(f"Could not remove failed container {container.id}: {e}")

    def stop_and_remove(self, container_id: str, timeout: int = 5):
        """Stop and remove a container. A container that is already gone is fine."""
        try:
            container = self.client.containers.get(container_id)
            container.stop(timeout=timeout)
            container.remove(force=True, v=True)
        except NotFound:
            pass
        except (DockerException, OSError) as e:
            raise SandboxUnavailable(f"Failed to stop {container_id}: {e}") from e

    def is_healthy(self, container_id: str, url: str | None = None) -> bool:
        try:
            container = self.client.containers.get(container_id)
        except NotFound:
            return False
        except (DockerException, OSError) as e:
            raise SandboxUnavailable(f"Failed to inspect {container_id}: {e}") from e

        if container.status != "running":
            return False

        health = container.attrs.get("State", {}).get("Health")
        if health:
            return health.get("Status") == "healthy"

        if url and self.http_check:
            return check_endpoint(url)
        return True

    def cleanup_all_managed(self):
        """Remove all sandbox containers (for cleanup on shutdown)."""
        containers = self.client.containers.list(all=True, filters={"label": f"{MANAGED_LABEL}=true"})
        for container in containers:
            try:
                container.stop(timeout=2)
                container.remove(force=True)
            except (DockerException, OSError) as e:
                logger.warning(f"Cleanup of {container.name} failed: {e}")
