"""Registry of live encoder child processes.

The registry is owned by the service lifecycle (API lifespan or CLI command)
and passed into the runner. Each spawn is wrapped in ``track()`` so the child
is unregistered on every exit path, and ``terminate_all()`` on shutdown kills
whatever is still running.
"""

import logging
import os
import signal
import subprocess
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List

import psutil

logger = logging.getLogger(__name__)


class RegistryClosedError(RuntimeError):
    """Raised when a process is registered after shutdown began."""


def terminate_process_tree(process: subprocess.Popen, grace_period_s: float = 5.0) -> int:
    """Kill an encoder process and all its children, then reap it.

    Kill sequence:
    1. SIGTERM to the process and its descendants
    2. Wait up to the grace period
    3. SIGKILL to survivors
    4. wait() on the Popen so no zombie remains

    Returns:
        The process return code
    """
    if process.poll() is not None:
        return process.returncode

    try:
        parent = psutil.Process(process.pid)
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        return process.wait()

    for proc in children + [parent]:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass

    _, alive = psutil.wait_procs(children + [parent], timeout=grace_period_s)

    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass

    if alive and os.name == "posix":
        # Grandchildren that escaped the tree walk still share the session
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass

    return process.wait()


class ProcessRegistry:
    """Tracks running encoder processes for cleanup on shutdown."""

    def __init__(self, grace_period_s: float = 5.0) -> None:
        self.grace_period_s = grace_period_s
        self._lock = threading.Lock()
        self._processes: Dict[int, subprocess.Popen] = {}
        self._closed = False

    def register(self, process: subprocess.Popen) -> None:
        with self._lock:
            if self._closed:
                raise RegistryClosedError(f"registry closed; refusing pid {process.pid}")
            self._processes[process.pid] = process
        logger.debug("registered encoder pid=%s", process.pid)

    def unregister(self, process: subprocess.Popen) -> None:
        with self._lock:
            self._processes.pop(process.pid, None)
        logger.debug("unregistered encoder pid=%s", process.pid)

    @contextmanager
    def track(self, process: subprocess.Popen) -> Iterator[subprocess.Popen]:
        """Register ``process`` for the duration of the block.

        If the registry is already closed the process is killed immediately
        and RegistryClosedError propagates.
        """
        try:
            self.register(process)
        except RegistryClosedError:
            terminate_process_tree(process, self.grace_period_s)
            raise
        try:
            yield process
        finally:
            self.unregister(process)

    def active_pids(self) -> List[int]:
        with self._lock:
            return list(self._processes)

    def __len__(self) -> int:
        with self._lock:
            return len(self._processes)

    @property
    def closed(self) -> bool:
        return self._closed

    def terminate_all(self) -> int:
        """Close the registry and terminate every tracked process.

        Returns:
            Count of processes terminated
        """
        with self._lock:
            self._closed = True
            processes = list(self._processes.values())

        for process in processes:
            logger.warning("terminating encoder pid=%s on shutdown", process.pid)
            try:
                terminate_process_tree(process, self.grace_period_s)
            except OSError as e:
                logger.error("failed to terminate encoder pid=%s: %s", process.pid, e)

        return len(processes)
