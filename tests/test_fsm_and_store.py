from __future__ import annotations

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import fakeredis
import pytest
from statemachine.exceptions import TransitionNotAllowed

from mctrl.api.models import SwitchOperation, SwitchState
from mctrl.fsm import SwitchFSM
from mctrl.switch_store import (
    fail_interrupted_operations,
    get_last_activated,
    get_operation,
    list_operations,
    save_operation,
    set_last_activated,
)


def _op(*, state: SwitchState = SwitchState.idle, started_at: datetime | None = None) -> SwitchOperation:
    return SwitchOperation(
        operation_id=uuid4(),
        target_world="beta",
        state=state,
        started_at=started_at or datetime.now(tz=UTC),
        previous_world="alpha",
        previous_level="worlds/alpha",
    )


def test_fsm_happy_path_records_transitions() -> None:
    op = _op()
    fsm = SwitchFSM(op)

    for event in ("begin", "server_stopped", "config_swapped", "server_started", "server_ready"):
        fsm.send(event)
        fsm.sync_state_to_model()

    assert op.state is SwitchState.succeeded
    assert len(op.transitions) == 5
    assert op.finished_at is not None
    assert op.is_terminal


def test_fsm_rejects_rollback_before_config_is_touched() -> None:
    fsm = SwitchFSM(_op())
    fsm.send("begin")

    with pytest.raises(TransitionNotAllowed):
        fsm.send("fault")

    fsm.send("abort")
    fsm.sync_state_to_model()
    assert fsm.operation.state is SwitchState.failed


def test_fsm_resumes_from_operation_state() -> None:
    op = _op(state=SwitchState.verifying)
    fsm = SwitchFSM(op)

    fsm.send("fault")
    fsm.send("restored")
    fsm.sync_state_to_model()

    assert op.state is SwitchState.rolled_back

    with pytest.raises(TransitionNotAllowed):
        fsm.send("begin")


def test_store_round_trip_and_ordering() -> None:
    r = fakeredis.FakeRedis(decode_responses=True)
    now = datetime.now(tz=UTC)
    older = _op(state=SwitchState.succeeded, started_at=now - timedelta(minutes=5))
    newer = _op(state=SwitchState.succeeded, started_at=now)

    save_operation(r=r, op=older)
    save_operation(r=r, op=newer)

    assert get_operation(r=r, operation_id=newer.operation_id) == newer
    assert get_operation(r=r, operation_id=uuid4()) is None
    assert [o.operation_id for o in list_operations(r=r)] == [newer.operation_id, older.operation_id]


def test_fail_interrupted_operations() -> None:
    r = fakeredis.FakeRedis(decode_responses=True)
    done = _op(state=SwitchState.rolled_back)
    running = _op(state=SwitchState.swapping)
    save_operation(r=r, op=done)
    save_operation(r=r, op=running)

    interrupted = fail_interrupted_operations(r=r)

    assert [o.operation_id for o in interrupted] == [running.operation_id]
    stored = get_operation(r=r, operation_id=running.operation_id)
    assert stored.state is SwitchState.failed
    assert stored.error.state is SwitchState.swapping
    assert get_operation(r=r, operation_id=done.operation_id).state is SwitchState.rolled_back


def test_last_activated() -> None:
    r = fakeredis.FakeRedis(decode_responses=True)
    at = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)

    set_last_activated(r=r, world_id="beta", at=at)

    assert get_last_activated(r=r) == {"beta": at}
