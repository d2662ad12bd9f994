"""Docker-backed sandbox computers for agents.

Each agent of an experiment gets its own long-lived container, created
lazily on first use and named after the experiment and agent index so a
later run reattaches to it. All interaction goes through the ``docker``
CLI.
"""

import shlex
import subprocess
import threading
from pathlib import Path
from typing import Dict, List, Optional

from loguru import logger

from .errors import ComputerError
from .protocols import Computer
from .types import ExecResult

DEFAULT_TIMEOUT = 120.0
WORKDIR = "/home/agent"


def computer_id(experiment_name: str, agent_index: int) -> str:
    """Container name of *agent_index*'s computer in an experiment."""
    safe = "".join(
        c if c.isalnum() or c in "-_" else "-" for c in experiment_name
    )
    return f"research-{safe}-{agent_index}"


def image_name(profile: str) -> str:
    return f"agent-computer:{profile}"


class DockerComputer:
    """
    Sandbox driver shelling out to the docker CLI.

    Satisfies :class:`~research_society.protocols.Computer`.

    Args:
        docker: Path or name of the docker executable.
        images_dir: Directory holding one ``<profile>/Dockerfile`` per
            profile, used by :meth:`build_image`.
    """

    def __init__(
        self,
        docker: str = "docker",
        images_dir: Optional[Path] = None,
    ) -> None:
        self.docker = docker
        self.images_dir = Path(images_dir) if images_dir else None

    def _run(
        self,
        args: List[str],
        timeout: Optional[float] = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        cmd = [self.docker] + args
        logger.debug(f"Running {' '.join(shlex.quote(a) for a in cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ComputerError(
                f"docker {args[0]} timed out after {timeout}s", cause=e
            ) from e
        except OSError as e:
            raise ComputerError(
                f"Failed to run docker: {e}", cause=e
            ) from e
        if check and result.returncode != 0:
            raise ComputerError(
                f"docker {args[0]} failed ({result.returncode}): "
                f"{result.stderr.strip()}"
            )
        return result

    def build_image(self, profile: str) -> str:
        """Build the image for *profile* and return its name."""
        image = image_name(profile)
        if self.images_dir is None:
            logger.info(f"No images directory, using prebuilt {image}")
            return image
        context = self.images_dir / profile
        if not (context / "Dockerfile").exists():
            raise ComputerError(f"No Dockerfile for profile '{profile}'")
        self._run(["build", "-t", image, str(context)])
        logger.success(f"Built computer image {image}")
        return image

    def create(self, computer_id: str, image: str) -> str:
        """Start the named container, reusing it if it already exists."""
        inspect = self._run(
            ["inspect", "-f", "{{.State.Running}}", computer_id],
            check=False,
        )
        if inspect.returncode == 0:
            if inspect.stdout.strip() != "true":
                self._run(["start", computer_id])
            logger.info(f"Reattached to computer {computer_id}")
            return computer_id
        self._run(
            [
                "run",
                "-d",
                "--name",
                computer_id,
                "-w",
                WORKDIR,
                image,
                "sleep",
                "infinity",
            ]
        )
        logger.info(f"Created computer {computer_id} from {image}")
        return computer_id

    def execute(
        self,
        handle: str,
        command: str,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> ExecResult:
        """Run *command* through ``bash -lc`` inside the container.

        A non-zero exit code is a normal result, not an error.
        """
        args = ["exec"]
        for key, value in (env or {}).items():
            args += ["-e", f"{key}={value}"]
        args += [handle, "bash", "-lc", command]
        result = self._run(
            args, timeout=timeout or DEFAULT_TIMEOUT, check=False
        )
        return ExecResult(
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.returncode,
        )

    def copy_in(
        self,
        handle: str,
        local_path: Path,
        remote_dir: Optional[str] = None,
    ) -> None:
        self._run(
            ["cp", str(local_path), f"{handle}:{remote_dir or WORKDIR}"]
        )

    def copy_out(
        self, handle: str, remote_path: str, local_path: Path
    ) -> None:
        Path(local_path).parent.mkdir(parents=True, exist_ok=True)
        self._run(["cp", f"{handle}:{remote_path}", str(local_path)])

    def stop(self, handle: str) -> None:
        self._run(["stop", handle], check=False)

    def terminate(self, handle: str) -> None:
        self._run(["rm", "-f", handle], check=False)
        logger.info(f"Terminated computer {handle}")


class ComputerPool:
    """Lazily created computers, one per agent of an experiment."""

    def __init__(
        self, computer: Computer, experiment_name: str, profile: str
    ) -> None:
        self.computer = computer
        self.experiment_name = experiment_name
        self.profile = profile
        self._lock = threading.Lock()
        self._image: Optional[str] = None
        self._handles: Dict[int, str] = {}

    def handle(self, agent_index: int) -> str:
        with self._lock:
            if agent_index in self._handles:
                return self._handles[agent_index]
            if self._image is None:
                self._image = self.computer.build_image(self.profile)
            handle = self.computer.create(
                computer_id(self.experiment_name, agent_index), self._image
            )
            self._handles[agent_index] = handle
            return handle

    def teardown(self) -> None:
        """Stop every computer this pool started."""
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            try:
                self.computer.stop(handle)
            except ComputerError as e:
                logger.warning(f"Failed to stop computer {handle}: {e}")
