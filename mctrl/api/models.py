from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from uuid import UUID

from pydantic import BaseModel, Field


class SwitchState(StrEnum):
    idle = "idle"
    stopping = "stopping"
    swapping = "swapping"
    starting = "starting"
    verifying = "verifying"
    rolling_back = "rolling_back"
    succeeded = "succeeded"
    failed = "failed"
    rolled_back = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({SwitchState.succeeded, SwitchState.failed, SwitchState.rolled_back})


class SwitchError(BaseModel):
    # State the operation was in when the failure happened.
    state: SwitchState
    cause: str
    retryable: bool = False


class StateChange(BaseModel):
    state: SwitchState
    at: datetime


class SwitchOperation(BaseModel):
    operation_id: UUID
    target_world: str
    state: SwitchState = SwitchState.idle
    started_at: datetime
    finished_at: datetime | None = None

    # Rollback target. `previous_level` is the raw `level-name` value, so a rollback
    # restores the file exactly even when it didn't match any known world.
    previous_world: str | None = None
    previous_level: str

    error: SwitchError | None = None
    # Set when a rollback failed and the server was left down.
    manual_intervention_required: bool = False

    transitions: list[StateChange] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


class SwitcherStatus(BaseModel):
    state: SwitchState
    current_world: str | None
    active_operation: SwitchOperation | None = None
    last_operation: SwitchOperation | None = None
    fatal_error: SwitchError | None = None


class WorldInfo(BaseModel):
    id: str
    name: str
    directory: str
    is_current: bool
    last_activated: datetime | None = None


class WorldListResponse(BaseModel):
    worlds: list[WorldInfo]


class CurrentWorldResponse(BaseModel):
    world: WorldInfo | None
    level_name: str


class SwitchRequest(BaseModel):
    world_id: str = Field(..., min_length=1, max_length=255)


class SwitchResponse(BaseModel):
    # None when the requested world was already active.
    operation: SwitchOperation | None


class RconCommandRequest(BaseModel):
    command: str = Field(..., min_length=1, max_length=1446)


class RconCommandResponse(BaseModel):
    command: str
    response: str


class PlayersResponse(BaseModel):
    count: int
    players: list[str]


class ErrorDetail(BaseModel):
    error: str
    message: str
    retryable: bool = False
