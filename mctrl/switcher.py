from __future__ import annotations

import dataclasses
import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from uuid import UUID, uuid4

import redis

from mctrl.api.models import SwitcherStatus, SwitchError, SwitchOperation, SwitchState
from mctrl.errors import (
    AuthFailure,
    ConfigWriteError,
    LaunchError,
    ManualInterventionRequired,
    MctrlError,
    OperationInProgress,
    RconConnectionError,
    RconError,
    RconTimeout,
    StillRunning,
)
from mctrl.fsm import SwitchFSM
from mctrl.rcon.queries import LIST, SAVE_ALL, STOP, TickStats, list_players, query_tick
from mctrl.rcon.session import RconSession
from mctrl.server.properties import LEVEL_NAME_KEY, ServerProperties
from mctrl.server.supervisor import LaunchSpec, ProcessHandle, ProcessSupervisor, StopResult
from mctrl.settings import SwitchTimeouts
from mctrl.switch_store import (
    fail_interrupted_operations,
    get_last_activated,
    get_operation,
    save_operation,
    set_last_activated,
)
from mctrl.worlds import World, WorldRegistry, level_for

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=UTC)


class WorldSwitcher:
    """Moves the game server between worlds: stop -> repoint -> start -> verify.

    Contract:
      - at most one switch is non-terminal at any time; `request_switch` checks this
        under a single lock and rejects everything else with `OperationInProgress`.
      - the switch itself runs on a worker thread; `request_switch` returns as soon
        as the operation is admitted.
      - a failure after the config was touched rolls back to the previous world.
        If the rollback fails too, the fault is latched and every further switch is
        refused with `ManualInterventionRequired` until `clear_fault()`.
      - `server.properties` is the ground truth for the active world; nothing about
        an in-flight switch is assumed to survive a sidecar restart.
    """

    def __init__(
        self,
        *,
        r: redis.Redis,
        worlds: WorldRegistry,
        properties: ServerProperties,
        server_dir: Path,
        session: RconSession,
        supervisor: ProcessSupervisor,
        launch: LaunchSpec,
        timeouts: SwitchTimeouts | None = None,
        sleep: Callable[[float], None] = time.sleep,
        recover: bool = True,
    ) -> None:
        self._r = r
        self._worlds = worlds
        self._properties = properties
        self._server_dir = server_dir
        self.session = session
        self._supervisor = supervisor
        self._launch = launch
        self.timeouts = timeouts or SwitchTimeouts()
        self._sleep = sleep

        self._guard = threading.Lock()
        self._active: SwitchOperation | None = None
        self._last: SwitchOperation | None = None
        self._fatal: SwitchError | None = None
        self._worker: threading.Thread | None = None
        self._handle: ProcessHandle | None = None

        if recover:
            self.recover()

    # --- boot ----------------------------------------------------------------

    def recover(self) -> None:
        for op in fail_interrupted_operations(r=self._r):
            logger.warning(
                "World switch %s to %s was interrupted by a restart while %s",
                op.operation_id,
                op.target_world,
                op.error.state.value if op.error else "running",
            )

        if self._launch.pid_file is not None:
            self._handle = self._supervisor.adopt(self._launch.pid_file)

        current = self.current_world()
        logger.info(
            "Active world on boot: %s (level-name=%s)",
            current.id if current else "<unknown>",
            self._properties.level_name(),
        )

    # --- read-only queries ----------------------------------------------------

    @property
    def process(self) -> ProcessHandle | None:
        return self._handle

    def current_level_name(self) -> str:
        return self._properties.level_name()

    def current_world(self) -> World | None:
        return self._worlds.find_by_level(self._properties.level_name(), server_dir=self._server_dir)

    def list_worlds(self) -> list[World]:
        self._worlds.refresh()
        activated = get_last_activated(r=self._r)
        return [dataclasses.replace(w, last_activated=activated.get(w.id)) for w in self._worlds.values()]

    def operation_status(self, operation_id: UUID) -> SwitchOperation | None:
        with self._guard:
            if self._active is not None and self._active.operation_id == operation_id:
                return self._active.model_copy(deep=True)
        return get_operation(r=self._r, operation_id=operation_id)

    def status(self) -> SwitcherStatus:
        with self._guard:
            active = self._active.model_copy(deep=True) if self._active else None
            last = self._last.model_copy(deep=True) if self._last else None
            fatal = self._fatal
        current = self.current_world()
        return SwitcherStatus(
            state=active.state if active else SwitchState.idle,
            current_world=current.id if current else None,
            active_operation=active,
            last_operation=last,
            fatal_error=fatal,
        )

    # --- passthrough ----------------------------------------------------------

    def run_passthrough(self, command: str) -> str:
        return self.session.execute(command, self.timeouts.command)

    def online_players(self) -> list[str]:
        return list_players(self.session, timeout=self.timeouts.command)

    def online_player_count(self) -> int:
        return len(self.online_players())

    def tick_stats(self) -> TickStats:
        return query_tick(self.session, timeout=self.timeouts.command)

    # --- switching ------------------------------------------------------------

    def request_switch(self, world_id: str) -> SwitchOperation | None:
        """Admit a switch to `world_id` and start it in the background.

        Returns None when `world_id` is already active.
        """

        self._worlds.refresh()
        with self._guard:
            if self._fatal is not None:
                raise ManualInterventionRequired(
                    f"A previous world switch failed to roll back: {self._fatal.cause}"
                )
            world = self._worlds.require(world_id)
            if self._active is not None:
                raise OperationInProgress(str(self._active.operation_id))

            previous_level = self._properties.raw_level_name()
            current = self.current_world()
            if current is not None and current.id == world.id:
                logger.info("World %s is already active, nothing to do", world.id)
                return None

            op = SwitchOperation(
                operation_id=uuid4(),
                target_world=world.id,
                started_at=_now(),
                previous_world=current.id if current else None,
                previous_level=previous_level,
            )
            self._active = op
            snapshot = op.model_copy(deep=True)
            self._save(snapshot)

            worker = threading.Thread(
                target=self._run,
                args=(op, world),
                name=f"world-switch-{op.operation_id}",
                daemon=True,
            )
            self._worker = worker
            worker.start()

        logger.info(
            "Admitted world switch %s: %s -> %s",
            op.operation_id,
            snapshot.previous_world or snapshot.previous_level,
            world.id,
        )
        return snapshot

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the running switch (if any). Returns True once nothing is running."""

        worker = self._worker
        if worker is None:
            return True
        worker.join(timeout)
        return not worker.is_alive()

    def clear_fault(self) -> bool:
        with self._guard:
            had_fault = self._fatal is not None
            self._fatal = None
        if had_fault:
            logger.warning("Manual intervention acknowledged; world switching is enabled again")
        return had_fault

    # --- worker ---------------------------------------------------------------

    def _run(self, op: SwitchOperation, world: World) -> None:
        fsm = SwitchFSM(op)
        try:
            self._switch(fsm, world)
        except Exception as e:
            # Unknown server state: refuse further switches until someone looks.
            logger.exception("World switch %s crashed", op.operation_id)
            with self._guard:
                op.error = SwitchError(state=op.state, cause=f"Unexpected error: {e!r}")
                op.state = SwitchState.failed
                op.finished_at = _now()
                op.manual_intervention_required = True
                self._fatal = op.error
            self._save(op.model_copy(deep=True))
        finally:
            with self._guard:
                self._last = op
                self._active = None

    def _switch(self, fsm: SwitchFSM, world: World) -> None:
        self._advance(fsm, "begin")

        try:
            self._stop_server()
        except StillRunning as e:
            self._advance(fsm, "abort", error=SwitchError(state=SwitchState.stopping, cause=str(e)))
            return
        self._advance(fsm, "server_stopped")

        try:
            self._properties.set_level_name(level_for(world, server_dir=self._server_dir))
        except ConfigWriteError as e:
            self._rollback(fsm, SwitchError(state=SwitchState.swapping, cause=str(e)))
            return
        self._advance(fsm, "config_swapped")

        try:
            self._start_server()
        except LaunchError as e:
            self._rollback(fsm, SwitchError(state=SwitchState.starting, cause=str(e)))
            return
        self._advance(fsm, "server_started")

        try:
            self._verify()
        except MctrlError as e:
            self._rollback(fsm, SwitchError(state=SwitchState.verifying, cause=str(e), retryable=e.retryable))
            return

        try:
            set_last_activated(r=self._r, world_id=world.id, at=_now())
        except redis.RedisError as e:
            logger.error("Failed to record activation time for world %s: %s", world.id, e)
        self._advance(fsm, "server_ready")

    def _rollback(self, fsm: SwitchFSM, error: SwitchError) -> None:
        op = fsm.operation
        logger.warning(
            "World switch %s failed while %s (%s); rolling back to %s",
            op.operation_id,
            error.state.value,
            error.cause,
            op.previous_world or op.previous_level,
        )
        self._advance(fsm, "fault", error=error)

        try:
            self._stop_started_server()
            self._properties.update({LEVEL_NAME_KEY: op.previous_level})
            self._start_server()
            self._verify()
        except MctrlError as e:
            fatal = SwitchError(
                state=SwitchState.rolling_back,
                cause=f"Rollback failed: {e}. Original failure while {error.state.value}: {error.cause}",
            )
            with self._guard:
                op.manual_intervention_required = True
                self._fatal = fatal
            logger.error("World switch %s: %s. Manual intervention required.", op.operation_id, fatal.cause)
            self._advance(fsm, "rollback_failed", error=fatal)
            return

        self._advance(fsm, "restored")

    def _advance(self, fsm: SwitchFSM, event: str, *, error: SwitchError | None = None) -> None:
        with self._guard:
            fsm.send(event)
            fsm.sync_state_to_model()
            if error is not None:
                fsm.operation.error = error
            snapshot = fsm.operation.model_copy(deep=True)
        logger.info("World switch %s (%s): %s", snapshot.operation_id, snapshot.target_world, snapshot.state.value)
        self._save(snapshot)

    def _save(self, op: SwitchOperation) -> None:
        try:
            save_operation(r=self._r, op=op)
        except redis.RedisError as e:
            # In-memory status stays authoritative for the running switch.
            logger.error("Failed to persist world switch %s: %s", op.operation_id, e)

    # --- steps ----------------------------------------------------------------

    def _stop_server(self) -> None:
        t = self.timeouts
        rcon_error: RconError | None = None
        try:
            self.session.execute(SAVE_ALL, t.command)
            try:
                self.session.execute(STOP, t.command)
            except RconConnectionError as e:
                # The server may drop the connection before echoing the sentinel;
                # `stop` still went out on a live connection.
                logger.info("RCON connection closed while stopping the server (%s); waiting for it to go down", e)
        except RconError as e:
            rcon_error = e
            logger.warning("Could not stop the server over RCON (%s); falling back to the process supervisor", e)
        finally:
            # The server drops the connection on stop anyway.
            self.session.close()

        handle = self._handle
        if handle is not None:
            result = self._supervisor.request_graceful_stop(handle, t.stop, send_signal=rcon_error is not None)
            if result is StopResult.still_running:
                raise StillRunning(f"Server process {handle.pid} is still running after a kill")
            if result is StopResult.forced:
                logger.warning("Server process %s had to be killed", handle.pid)
            self._handle = None
            return

        if rcon_error is None:
            self._wait_for_rcon_down(t.stop)
        elif isinstance(rcon_error, RconConnectionError):
            logger.info("No managed server process and RCON is unreachable; treating the server as stopped")
        else:
            raise StillRunning(f"Server is not managed by mctrl and could not be stopped over RCON: {rcon_error}")

    def _wait_for_rcon_down(self, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        while True:
            try:
                self.session.connect()
            except RconConnectionError:
                return
            except RconError:
                pass
            finally:
                self.session.close()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise StillRunning(f"Server kept accepting RCON connections {timeout}s after `stop`")
            self._sleep(min(self.timeouts.poll_interval, remaining))

    def _stop_started_server(self) -> None:
        self.session.close()
        handle = self._handle
        if handle is None:
            return
        result = self._supervisor.request_graceful_stop(handle, self.timeouts.stop, send_signal=True)
        if result is StopResult.still_running:
            raise StillRunning(f"Server process {handle.pid} is still running after a kill")
        self._handle = None

    def _start_server(self) -> None:
        self._handle = self._supervisor.start(self._server_dir, self._launch)

    def _verify(self) -> None:
        t = self.timeouts
        deadline = time.monotonic() + t.verify
        auth_failures = 0
        last_error: RconError | None = None

        while True:
            handle = self._handle
            if handle is not None and not self._supervisor.is_running(handle):
                raise LaunchError(
                    f"Server process {handle.pid} exited with status "
                    f"{self._supervisor.exit_status(handle)} before answering RCON"
                )

            remaining = deadline - time.monotonic()
            try:
                self.session.execute(LIST, max(0.1, min(t.command, remaining)))
                return
            except AuthFailure as e:
                auth_failures += 1
                last_error = e
                if auth_failures >= t.max_auth_failures:
                    raise
            except RconError as e:
                last_error = e

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise RconTimeout(f"Server did not answer RCON within {t.verify}s (last error: {last_error})")
            self._sleep(min(t.poll_interval, remaining))
