from __future__ import annotations

import re

from pydantic import BaseModel

from mctrl.errors import TickStatsParseError
from mctrl.rcon.session import RconSession

SAVE_ALL = "save-all"
STOP = "stop"
LIST = "list"
TICK_QUERY = "tick query"

_TICK_NOISE = re.compile(r"[:,()]")


class TickStats(BaseModel):
    average: str
    target: str
    p50: str
    p95: str
    p99: str


def parse_player_list(text: str) -> list[str]:
    """Parse `list` output.

    Example: "There are 2 of a max of 20 players online: alex, steve"
    """

    _, sep, players = text.partition(": ")
    if not sep:
        return []
    players = players.strip()
    if not players:
        return []
    return [p.strip() for p in players.split(", ") if p.strip()]


def parse_tick_stats(text: str) -> TickStats:
    # Target tick rate: 20.0 per second.
    # Average time per tick: 13.2ms (Target: 50.0ms)
    # Percentiles: P50: 13.0ms P95: 16.0ms P99: 18.6ms, sample: 100
    timings = [w for w in _TICK_NOISE.sub(" ", text).split() if w.endswith("ms")]
    if len(timings) != 5:
        raise TickStatsParseError(f"Failed to parse server tick stats: {text!r}")
    average, target, p50, p95, p99 = timings
    return TickStats(average=average, target=target, p50=p50, p95=p95, p99=p99)


def list_players(session: RconSession, *, timeout: float) -> list[str]:
    return parse_player_list(session.execute(LIST, timeout))


def online_player_count(session: RconSession, *, timeout: float) -> int:
    return len(list_players(session, timeout=timeout))


def query_tick(session: RconSession, *, timeout: float) -> TickStats:
    return parse_tick_stats(session.execute(TICK_QUERY, timeout))
