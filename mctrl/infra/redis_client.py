from __future__ import annotations

import redis


def create_redis(url: str, *, timeout: float) -> redis.Redis:
    """Client for the operation history store; connects and calls give up after `timeout`."""

    return redis.Redis.from_url(
        url,
        decode_responses=True,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
    )
