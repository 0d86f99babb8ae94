from __future__ import annotations

from datetime import UTC, datetime

from statemachine import State, StateMachine

from mctrl.api.models import StateChange, SwitchOperation, SwitchState


class SwitchFSM(StateMachine):
    """FSM wrapper around SwitchOperation.

    - happy path: idle -> stopping -> swapping -> starting -> verifying -> succeeded
    - a failed stop aborts before anything was touched: stopping -> failed
    - later failures go through rolling_back, which ends in rolled_back or failed
    The switcher performs the side effects; the FSM only guards transitions.
    """

    idle = State(SwitchState.idle.value, value=SwitchState.idle.value, initial=True)
    stopping = State(SwitchState.stopping.value, value=SwitchState.stopping.value)
    swapping = State(SwitchState.swapping.value, value=SwitchState.swapping.value)
    starting = State(SwitchState.starting.value, value=SwitchState.starting.value)
    verifying = State(SwitchState.verifying.value, value=SwitchState.verifying.value)
    rolling_back = State(SwitchState.rolling_back.value, value=SwitchState.rolling_back.value)
    succeeded = State(SwitchState.succeeded.value, value=SwitchState.succeeded.value, final=True)
    failed = State(SwitchState.failed.value, value=SwitchState.failed.value, final=True)
    rolled_back = State(SwitchState.rolled_back.value, value=SwitchState.rolled_back.value, final=True)

    begin = idle.to(stopping)
    server_stopped = stopping.to(swapping)
    config_swapped = swapping.to(starting)
    server_started = starting.to(verifying)
    server_ready = verifying.to(succeeded)
    abort = stopping.to(failed)
    fault = swapping.to(rolling_back) | starting.to(rolling_back) | verifying.to(rolling_back)
    restored = rolling_back.to(rolled_back)
    rollback_failed = rolling_back.to(failed)

    def __init__(self, operation: SwitchOperation):
        self.operation = operation
        super().__init__(start_value=operation.state.value)

    def sync_state_to_model(self) -> None:
        state = SwitchState(str(self.current_state.value))
        if state == self.operation.state:
            return
        now = datetime.now(tz=UTC)
        self.operation.state = state
        self.operation.transitions.append(StateChange(state=state, at=now))
        if state.is_terminal:
            self.operation.finished_at = now
