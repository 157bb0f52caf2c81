"""Service managers: the boundary between the sequencer and the runtime.

The sequencer only needs three things from whatever actually runs the
services: a preflight check, "start this service", and "stop everything".
``ServiceManager`` is that contract; ``ComposeServiceManager`` implements it
on top of the ``docker compose`` CLI.

Each service is started on its own with ``up -d --no-deps <name>`` so that
ordering and health gating stay under pipespine's control rather than
compose's ``depends_on``.

Tags:
    docker, compose, subprocess, services
"""

from __future__ import annotations

import shutil
import subprocess
from abc import ABC, abstractmethod

from pipespine.core.errors import DockerNotFoundError, ServiceStartError
from pipespine.core.logging import get_logger
from pipespine.deploy.config import PipelineConfig

logger = get_logger(__name__)


class ServiceManager(ABC):
    """Starts and stops named services."""

    def preflight(self) -> None:
        """Verify the runtime is usable; raise ``ConfigurationError`` if not."""

    @abstractmethod
    def start(self, name: str) -> None:
        """Start one service. Raises ``ServiceStartError`` on failure."""

    @abstractmethod
    def stop_all(self) -> None:
        """Stop and remove every managed service."""


class ComposeServiceManager(ServiceManager):
    """``docker compose`` backed service manager.

    Parameters
    ----------
    config
        Pipeline configuration (compose files, project name, env file).
    command_timeout
        Seconds allowed for a single compose invocation.
    """

    def __init__(self, config: PipelineConfig, command_timeout: int = 300):
        self.config = config
        self.command_timeout = command_timeout
        self._docker_cmd = "docker"

    # ------------------------------------------------------------------
    # Preflight
    # ------------------------------------------------------------------

    def preflight(self) -> None:
        """Check that the Docker CLI and the compose plugin are installed."""
        docker = shutil.which("docker")
        if docker is None:
            raise DockerNotFoundError(
                "Docker CLI not found on PATH. Install Docker or add it to PATH.\n"
                "  - Linux:   https://docs.docker.com/engine/install/\n"
                "  - macOS:   https://docs.docker.com/desktop/install/mac-install/"
            )
        self._docker_cmd = docker

        try:
            result = subprocess.run(
                [docker, "compose", "version"],
                capture_output=True,
                text=True,
                timeout=30,
            )
        except (subprocess.TimeoutExpired, OSError) as exc:
            raise DockerNotFoundError(f"docker compose is not usable: {exc}") from exc
        if result.returncode != 0:
            raise DockerNotFoundError(
                "docker compose plugin not available "
                f"(exit {result.returncode}): {result.stderr.strip()}"
            )
        logger.debug("compose.preflight_ok", version=result.stdout.strip())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, name: str) -> None:
        logger.info("compose.start", service=name)
        try:
            self._run_compose(["up", "-d", "--no-deps", name])
        except ServiceStartError as exc:
            raise exc.with_context(service=name)

    def stop_all(self) -> None:
        logger.info("compose.down", project=self.config.project_name)
        self._run_compose(["down", "--remove-orphans"])

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def base_command(self) -> list[str]:
        """``docker compose`` plus the global flags from the configuration."""
        cmd = [self._docker_cmd, "compose"]
        for path in self.config.compose_files:
            cmd.extend(["-f", str(self.config.base_dir / path)])
        if self.config.project_name:
            cmd.extend(["--project-name", self.config.project_name])
        if self.config.env_file:
            cmd.extend(["--env-file", str(self.config.base_dir / self.config.env_file)])
        return cmd

    def _run_compose(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        """Run a compose subcommand, raising ``ServiceStartError`` on failure."""
        cmd = [*self.base_command(), *args]
        logger.debug("compose.exec", cmd=" ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.command_timeout,
                cwd=self.config.base_dir,
            )
        except subprocess.TimeoutExpired as exc:
            raise ServiceStartError(
                f"docker compose timed out after {self.command_timeout}s: {' '.join(args)}"
            ) from exc
        except OSError as exc:
            raise ServiceStartError(f"cannot run docker compose: {exc}", cause=exc) from exc

        if result.returncode != 0:
            raise ServiceStartError(
                f"docker compose failed (exit {result.returncode}): "
                f"{' '.join(args)}\n{result.stderr.strip()}"
            )
        return result
