from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.concurrency import run_in_threadpool

from mctrl.api.deps import get_switcher
from mctrl.api.models import (
    CurrentWorldResponse,
    ErrorDetail,
    PlayersResponse,
    RconCommandRequest,
    RconCommandResponse,
    SwitcherStatus,
    SwitchOperation,
    SwitchRequest,
    SwitchResponse,
    WorldInfo,
    WorldListResponse,
)
from mctrl.errors import (
    ManualInterventionRequired,
    MctrlError,
    NotConnected,
    OperationInProgress,
    PropertiesError,
    RconError,
    RconTimeout,
    UnknownWorld,
)
from mctrl.rcon.queries import TickStats
from mctrl.switcher import WorldSwitcher
from mctrl.worlds import World

logger = logging.getLogger(__name__)

router = APIRouter()


def _status_for(e: MctrlError) -> int:
    if isinstance(e, UnknownWorld):
        return status.HTTP_404_NOT_FOUND
    if isinstance(e, OperationInProgress):
        return status.HTTP_409_CONFLICT
    if isinstance(e, ManualInterventionRequired):
        return status.HTTP_423_LOCKED
    if isinstance(e, NotConnected) and e.busy:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(e, RconTimeout):
        return status.HTTP_504_GATEWAY_TIMEOUT
    if isinstance(e, RconError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _http_error(e: MctrlError) -> HTTPException:
    code = _status_for(e)
    if code >= 500 and not isinstance(e, RconError):
        logger.error("Request failed: %s", e)
    detail = ErrorDetail(error=type(e).__name__, message=str(e), retryable=e.retryable)
    return HTTPException(status_code=code, detail=detail.model_dump())


def _world_info(world: World, *, current: World | None) -> WorldInfo:
    return WorldInfo(
        id=world.id,
        name=world.name,
        directory=str(world.directory),
        is_current=current is not None and current.id == world.id,
        last_activated=world.last_activated,
    )


@router.get("/healthcheck")
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/worlds", response_model=WorldListResponse)
async def list_worlds_route(switcher: WorldSwitcher = Depends(get_switcher)) -> WorldListResponse:
    try:
        worlds = await run_in_threadpool(switcher.list_worlds)
        current = await run_in_threadpool(switcher.current_world)
    except PropertiesError as e:
        raise _http_error(e) from e

    infos = [_world_info(w, current=current) for w in worlds]
    infos.sort(key=lambda w: (w.name, w.id))
    return WorldListResponse(worlds=infos)


@router.get("/worlds/current", response_model=CurrentWorldResponse)
async def current_world_route(switcher: WorldSwitcher = Depends(get_switcher)) -> CurrentWorldResponse:
    try:
        worlds = await run_in_threadpool(switcher.list_worlds)
        current = await run_in_threadpool(switcher.current_world)
        level_name = await run_in_threadpool(switcher.current_level_name)
    except PropertiesError as e:
        raise _http_error(e) from e

    # list_worlds carries last_activated, current_world does not.
    world = next((w for w in worlds if current is not None and w.id == current.id), None)
    info = _world_info(world, current=world) if world is not None else None
    return CurrentWorldResponse(world=info, level_name=level_name)


@router.post(
    "/worlds/switch",
    response_model=SwitchResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def switch_world_route(
    payload: SwitchRequest,
    response: Response,
    switcher: WorldSwitcher = Depends(get_switcher),
) -> SwitchResponse:
    try:
        op = await run_in_threadpool(switcher.request_switch, payload.world_id)
    except MctrlError as e:
        raise _http_error(e) from e

    if op is None:
        response.status_code = status.HTTP_200_OK
    return SwitchResponse(operation=op)


@router.get("/switch", response_model=SwitcherStatus)
async def switch_status_route(switcher: WorldSwitcher = Depends(get_switcher)) -> SwitcherStatus:
    try:
        return await run_in_threadpool(switcher.status)
    except PropertiesError as e:
        raise _http_error(e) from e


@router.post("/switch/fault/clear")
async def clear_fault_route(switcher: WorldSwitcher = Depends(get_switcher)) -> dict[str, bool]:
    return {"cleared": switcher.clear_fault()}


@router.get("/switch/{operation_id}", response_model=SwitchOperation)
async def get_operation_route(operation_id: UUID, switcher: WorldSwitcher = Depends(get_switcher)) -> SwitchOperation:
    op = await run_in_threadpool(switcher.operation_status, operation_id)
    if op is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Switch operation not found")
    return op


@router.post("/rcon", response_model=RconCommandResponse)
async def rcon_command_route(
    payload: RconCommandRequest,
    switcher: WorldSwitcher = Depends(get_switcher),
) -> RconCommandResponse:
    try:
        text = await run_in_threadpool(switcher.run_passthrough, payload.command)
    except RconError as e:
        raise _http_error(e) from e
    return RconCommandResponse(command=payload.command, response=text)


@router.get("/players", response_model=PlayersResponse)
async def players_route(switcher: WorldSwitcher = Depends(get_switcher)) -> PlayersResponse:
    try:
        players = await run_in_threadpool(switcher.online_players)
    except RconError as e:
        raise _http_error(e) from e
    return PlayersResponse(count=len(players), players=players)


@router.get("/tick", response_model=TickStats)
async def tick_route(switcher: WorldSwitcher = Depends(get_switcher)) -> TickStats:
    try:
        return await run_in_threadpool(switcher.tick_stats)
    except RconError as e:
        raise _http_error(e) from e
