"""Run the built artifact as a child process and collect its output (internal)."""

import logging
import os
import subprocess
import sys
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from jakartashift.exceptions import VerificationSetupError

logger = logging.getLogger(__name__)


@dataclass
class RunOutcome:
    command: List[str]
    returncode: Optional[int]  # None when the process was killed on timeout
    stdout: str
    stderr: str
    timed_out: bool = False


def default_command(java_executable: str, artifact: Path, memory_mb: int) -> List[str]:
    return [java_executable, f"-Xmx{memory_mb}m", "-jar", str(artifact)]


def _memory_limiter(memory_mb: int) -> Optional[Callable[[], None]]:
    """preexec_fn capping the address space of a non-JVM child (POSIX only)."""
    if os.name != "posix":
        return None
    import resource

    limit = memory_mb * 1024 * 1024

    def apply() -> None:
        resource.setrlimit(resource.RLIMIT_AS, (limit, limit))

    return apply


def _run(command: List[str], cwd: Optional[Path], timeout: float, preexec) -> RunOutcome:
    try:
        proc = subprocess.Popen(
            command,
            cwd=str(cwd) if cwd else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            preexec_fn=preexec,
        )
    except OSError as e:
        raise VerificationSetupError(f"Cannot start {command[0]}: {e}") from e
    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()
        stdout, stderr = proc.communicate()
        logger.warning("Killed %s after %ss", command[0], timeout)
        return RunOutcome(command, None, stdout or "", stderr or "", timed_out=True)
    return RunOutcome(command, proc.returncode, stdout, stderr)


def start_artifact(
    artifact: Path,
    timeout: float,
    memory_mb: int,
    java_executable: str = "java",
    command: Optional[Sequence[str]] = None,
    cwd: Optional[Path] = None,
) -> "Future[RunOutcome]":
    """Start the artifact on a worker thread and return without waiting.

    The child runs under a wall-clock timeout and memory ceiling. The default
    command is ``java -Xmx<memory_mb>m -jar <artifact>``. A custom command gets
    the artifact path appended and an RLIMIT_AS ceiling on POSIX. A command
    that cannot be started surfaces as VerificationSetupError from the future.
    """
    if command:
        argv = [*command, str(artifact)]
        preexec = _memory_limiter(memory_mb)
    else:
        argv = default_command(java_executable, artifact, memory_mb)
        preexec = None
    if preexec is not None and sys.platform == "darwin":
        # RLIMIT_AS is not enforced on macOS
        preexec = None
    logger.info("Running %s (timeout %ss)", " ".join(argv), timeout)
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="jakartashift-verify")
    future = pool.submit(_run, argv, cwd, timeout, preexec)
    # the worker finishes the submitted run before it exits
    pool.shutdown(wait=False)
    return future


def run_artifact(
    artifact: Path,
    timeout: float,
    memory_mb: int,
    java_executable: str = "java",
    command: Optional[Sequence[str]] = None,
    cwd: Optional[Path] = None,
) -> RunOutcome:
    """Blocking form of start_artifact: waits for the child to exit or be killed."""
    return start_artifact(artifact, timeout, memory_mb, java_executable, command, cwd).result()
