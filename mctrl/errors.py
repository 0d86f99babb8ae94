from __future__ import annotations


class MctrlError(Exception):
    """Base class for every error raised by mctrl.

    `retryable` tells callers whether the same request may succeed later without
    operator action (busy session, timeout, switch already running).
    """

    retryable: bool = False


class SettingsError(MctrlError):
    pass


# --- control protocol -------------------------------------------------------


class RconError(MctrlError):
    pass


class RconConnectionError(RconError):
    """Transport-level failure. The session is reset and reconnects on next use."""

    retryable = True


class AuthFailure(RconError):
    def __init__(self, message: str = "RCON authentication failed") -> None:
        super().__init__(message)


class ProtocolError(RconError):
    """Unexpected framing or request ids. The session is reset."""


class MalformedPacket(ProtocolError):
    pass


class PayloadTooBig(ProtocolError):
    def __init__(self, limit: int, size: int) -> None:
        super().__init__(f"A packet payload must be at most {limit} bytes, got: {size}")
        self.limit = limit
        self.size = size


class RconTimeout(RconError):
    retryable = True


class NotConnected(RconError):
    retryable = True

    def __init__(self, message: str = "RCON session is not ready", *, busy: bool = False) -> None:
        super().__init__(message)
        self.busy = busy


class TickStatsParseError(RconError):
    pass


# --- server process / configuration ----------------------------------------


class LaunchError(MctrlError):
    pass


class StillRunning(MctrlError):
    pass


class PropertiesError(MctrlError):
    pass


class ConfigWriteError(PropertiesError):
    pass


# --- world switching --------------------------------------------------------


class UnknownWorld(MctrlError):
    def __init__(self, world_id: str) -> None:
        super().__init__(f"No world named `{world_id}`")
        self.world_id = world_id


class OperationInProgress(MctrlError):
    retryable = True

    def __init__(self, operation_id: str) -> None:
        super().__init__(f"World switch {operation_id} is still in progress")
        self.operation_id = operation_id


class ManualInterventionRequired(MctrlError):
    """A rollback failed; the server is left down until an operator clears the fault."""
