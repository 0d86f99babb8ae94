from __future__ import annotations

from datetime import UTC, datetime
from uuid import UUID

import redis

from mctrl.api.models import SwitchError, SwitchOperation, SwitchState


OPERATIONS_SET_KEY = "mctrl:switches"
OPERATION_KEY_PREFIX = "mctrl:switch:"  # + {uuid}
LAST_ACTIVATED_KEY = "mctrl:worlds:last_activated"  # hash world id -> iso timestamp


def _now() -> datetime:
    return datetime.now(tz=UTC)


def _operation_key(operation_id: UUID) -> str:
    return f"{OPERATION_KEY_PREFIX}{operation_id}"


def save_operation(*, r: redis.Redis, op: SwitchOperation) -> None:
    pipe = r.pipeline()
    pipe.set(_operation_key(op.operation_id), op.model_dump_json())
    pipe.sadd(OPERATIONS_SET_KEY, str(op.operation_id))
    pipe.execute()


def get_operation(*, r: redis.Redis, operation_id: UUID) -> SwitchOperation | None:
    raw = r.get(_operation_key(operation_id))
    if not raw:
        return None
    return SwitchOperation.model_validate_json(raw)


def list_operations(*, r: redis.Redis) -> list[SwitchOperation]:
    out: list[SwitchOperation] = []
    for sid in r.smembers(OPERATIONS_SET_KEY):
        try:
            oid = UUID(sid)
        except ValueError:
            continue
        op = get_operation(r=r, operation_id=oid)
        if op is not None:
            out.append(op)
    out.sort(key=lambda o: o.started_at, reverse=True)
    return out


def fail_interrupted_operations(*, r: redis.Redis) -> list[SwitchOperation]:
    """Mark operations that were mid-flight when the sidecar died as failed.

    Nothing about an in-memory switch survives a restart; the properties file is
    the ground truth for which world is active.
    """

    interrupted: list[SwitchOperation] = []
    for op in list_operations(r=r):
        if op.state.is_terminal:
            continue
        op.error = SwitchError(state=op.state, cause="Interrupted by a sidecar restart")
        op.state = SwitchState.failed
        op.finished_at = _now()
        save_operation(r=r, op=op)
        interrupted.append(op)
    return interrupted


def set_last_activated(*, r: redis.Redis, world_id: str, at: datetime) -> None:
    r.hset(LAST_ACTIVATED_KEY, world_id, at.isoformat())


def get_last_activated(*, r: redis.Redis) -> dict[str, datetime]:
    raw = r.hgetall(LAST_ACTIVATED_KEY)
    out: dict[str, datetime] = {}
    for world_id, ts in raw.items():
        try:
            out[world_id] = datetime.fromisoformat(ts)
        except ValueError:
            continue
    return out
