from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path

import psutil

from mctrl.errors import LaunchError

logger = logging.getLogger(__name__)


class StopResult(StrEnum):
    stopped = "stopped"
    forced = "forced"
    still_running = "still_running"


@dataclass(frozen=True, slots=True)
class LaunchSpec:
    command: tuple[str, ...]
    env: Mapping[str, str] | None = None
    # Server stdout/stderr are appended here; discarded when unset.
    log_file: Path | None = None
    # Lets a restarted sidecar find the process again (see `ProcessSupervisor.adopt`).
    pid_file: Path | None = None


@dataclass(slots=True)
class ProcessHandle:
    pid: int
    process: psutil.Process
    started_at: datetime
    adopted: bool = False
    pid_file: Path | None = None
    returncode: int | None = field(default=None)


def _now() -> datetime:
    return datetime.now(tz=UTC)


class ProcessSupervisor:
    """Starts, stops and watches the single game-server process.

    Handles are only mutated here; everyone else just passes them back in.
    """

    def __init__(self, *, kill_timeout: float = 10.0) -> None:
        self.kill_timeout = kill_timeout

    def start(self, working_directory: Path, spec: LaunchSpec) -> ProcessHandle:
        if not spec.command:
            raise LaunchError("The launch command is empty")

        env = None if spec.env is None else {**os.environ, **spec.env}
        log = None
        try:
            if spec.log_file is not None:
                spec.log_file.parent.mkdir(parents=True, exist_ok=True)
                log = open(spec.log_file, "ab")
            process = psutil.Popen(
                list(spec.command),
                cwd=str(working_directory),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=log if log is not None else subprocess.DEVNULL,
                stderr=subprocess.STDOUT,
                # Keep the server out of the sidecar's process group so a Ctrl-C here
                # doesn't take it down.
                start_new_session=True,
            )
        except (OSError, psutil.Error) as e:
            raise LaunchError(f"Failed to start `{spec.command[0]}` in {working_directory}: {e}") from e
        finally:
            if log is not None:
                log.close()

        handle = ProcessHandle(pid=process.pid, process=process, started_at=_now(), pid_file=spec.pid_file)
        if spec.pid_file is not None:
            self._write_pid_file(spec.pid_file, process)
        logger.info("Started server process %s: %s", process.pid, " ".join(spec.command))
        return handle

    def adopt(self, pid_file: Path) -> ProcessHandle | None:
        """Wrap a server process started by an earlier sidecar run.

        The pid file stores the pid and its creation time so a recycled pid is
        never mistaken for the server.
        """

        try:
            pid_text, _, created_text = pid_file.read_text(encoding="utf-8").strip().partition("\n")
            pid = int(pid_text)
            created = float(created_text) if created_text else None
        except (OSError, ValueError):
            return None

        try:
            process = psutil.Process(pid)
            if created is not None and abs(process.create_time() - created) > 1.0:
                logger.info("Ignoring stale pid file %s (pid %s was reused)", pid_file, pid)
                return None
            if not process.is_running() or process.status() == psutil.STATUS_ZOMBIE:
                return None
        except psutil.Error:
            return None

        logger.info("Adopted running server process %s from %s", pid, pid_file)
        return ProcessHandle(
            pid=pid,
            process=process,
            started_at=datetime.fromtimestamp(process.create_time(), tz=UTC),
            adopted=True,
            pid_file=pid_file,
        )

    def is_running(self, handle: ProcessHandle) -> bool:
        if handle.returncode is not None:
            return False
        process = handle.process
        if isinstance(process, psutil.Popen):
            code = process.poll()
            if code is not None:
                handle.returncode = code
                return False
            return True
        try:
            return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False

    def exit_status(self, handle: ProcessHandle) -> int | None:
        if self.is_running(handle):
            return None
        return handle.returncode

    def request_graceful_stop(self, handle: ProcessHandle, timeout: float, *, send_signal: bool = True) -> StopResult:
        """Wait for the process to exit, escalating to a kill of its process tree.

        With `send_signal=False` the caller has already asked the server to stop
        (RCON `stop`), so this only waits before escalating.
        """

        if not self.is_running(handle):
            self._forget(handle)
            return StopResult.stopped

        if send_signal:
            try:
                handle.process.terminate()
                logger.info("Sent SIGTERM to server process %s", handle.pid)
            except psutil.NoSuchProcess:
                self._forget(handle)
                return StopResult.stopped
            except psutil.AccessDenied as e:
                logger.warning("Not allowed to signal server process %s: %s", handle.pid, e)

        if self._wait(handle, timeout):
            self._forget(handle)
            return StopResult.stopped

        logger.warning("Server process %s did not exit within %ss, killing it", handle.pid, timeout)
        try:
            children = handle.process.children(recursive=True)
        except psutil.Error:
            children = []
        for proc in [*children, handle.process]:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as e:
                logger.error("Not allowed to kill process %s: %s", proc.pid, e)

        if not self._wait(handle, self.kill_timeout):
            logger.error("Server process %s survived a kill", handle.pid)
            return StopResult.still_running

        psutil.wait_procs(children, timeout=self.kill_timeout)
        self._forget(handle)
        return StopResult.forced

    def _wait(self, handle: ProcessHandle, timeout: float) -> bool:
        try:
            code = handle.process.wait(timeout=timeout)
        except psutil.TimeoutExpired:
            return False
        except psutil.NoSuchProcess:
            return True
        if code is not None:
            handle.returncode = code
        elif handle.returncode is None:
            # Non-child processes don't report an exit code.
            handle.returncode = -1
        return True

    @staticmethod
    def _write_pid_file(pid_file: Path, process: psutil.Process) -> None:
        try:
            created = process.create_time()
        except psutil.Error:
            created = None
        text = f"{process.pid}\n{created!r}\n" if created is not None else f"{process.pid}\n"
        try:
            pid_file.parent.mkdir(parents=True, exist_ok=True)
            pid_file.write_text(text, encoding="utf-8")
        except OSError as e:
            logger.warning("Failed to write pid file %s: %s", pid_file, e)

    @staticmethod
    def _forget(handle: ProcessHandle) -> None:
        if handle.pid_file is None:
            return
        try:
            handle.pid_file.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to remove pid file %s: %s", handle.pid_file, e)
