from __future__ import annotations

import os
import shlex
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from mctrl.errors import PropertiesError, SettingsError
from mctrl.server.properties import ServerProperties

DEFAULT_LAUNCH_COMMAND = "java -jar server.jar nogui"
DEFAULT_REDIS_URL = "redis://localhost:6379/0"


@dataclass(frozen=True, slots=True)
class SwitchTimeouts:
    # Each RCON command (save-all, stop, list).
    command: float = 10.0
    # How long a stopping server gets before it is killed.
    stop: float = 60.0
    # How long a freshly started server gets to answer RCON.
    verify: float = 120.0
    poll_interval: float = 2.0
    # Consecutive auth failures while verifying before giving up early.
    max_auth_failures: int = 3


@dataclass(frozen=True, slots=True)
class Settings:
    server_dir: Path
    properties_file: Path
    worlds_dir: Path
    rcon_host: str
    rcon_port: int
    rcon_password: str
    launch_command: tuple[str, ...]
    pid_file: Path
    server_log: Path
    timeouts: SwitchTimeouts
    redis_url: str = DEFAULT_REDIS_URL


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise SettingsError(f"{name} must be a number, got: {raw!r}") from e
    if value <= 0:
        raise SettingsError(f"{name} must be positive, got: {raw!r}")
    return value


def _path(env: Mapping[str, str], name: str, default: Path) -> Path:
    raw = env.get(name)
    return Path(raw).expanduser() if raw else default


def settings_from_env(env: Mapping[str, str] | None = None) -> Settings:
    """Build settings from MCTRL_* environment variables.

    RCON port and password fall back to `rcon.port` / `rcon.password` from the
    server's own `server.properties`, which is where the server reads them from.
    """

    env = os.environ if env is None else env

    server_dir = _path(env, "MCTRL_SERVER_DIR", Path(".")).resolve()
    properties_file = _path(env, "MCTRL_PROPERTIES_FILE", server_dir / "server.properties")

    rcon_port_raw = env.get("MCTRL_RCON_PORT")
    rcon_password = env.get("MCTRL_RCON_PASSWORD")
    if not rcon_port_raw or rcon_password is None:
        try:
            rcon = ServerProperties(properties_file).rcon_properties()
        except PropertiesError as e:
            raise SettingsError(f"Set MCTRL_RCON_PORT and MCTRL_RCON_PASSWORD, or fix {properties_file}: {e}") from e
        rcon_port_raw = rcon_port_raw or str(rcon.port)
        rcon_password = rcon.password if rcon_password is None else rcon_password

    try:
        rcon_port = int(rcon_port_raw)
    except ValueError as e:
        raise SettingsError(f"MCTRL_RCON_PORT must be an integer, got: {rcon_port_raw!r}") from e

    launch_command = tuple(shlex.split(env.get("MCTRL_LAUNCH_COMMAND") or DEFAULT_LAUNCH_COMMAND))
    if not launch_command:
        raise SettingsError("MCTRL_LAUNCH_COMMAND is empty")

    defaults = SwitchTimeouts()
    timeouts = SwitchTimeouts(
        command=_float(env, "MCTRL_COMMAND_TIMEOUT", defaults.command),
        stop=_float(env, "MCTRL_STOP_TIMEOUT", defaults.stop),
        verify=_float(env, "MCTRL_VERIFY_TIMEOUT", defaults.verify),
        poll_interval=_float(env, "MCTRL_POLL_INTERVAL", defaults.poll_interval),
    )

    return Settings(
        server_dir=server_dir,
        properties_file=properties_file,
        worlds_dir=_path(env, "MCTRL_WORLDS_DIR", server_dir / "worlds"),
        rcon_host=env.get("MCTRL_RCON_HOST", "127.0.0.1"),
        rcon_port=rcon_port,
        rcon_password=rcon_password,
        launch_command=launch_command,
        pid_file=_path(env, "MCTRL_PID_FILE", server_dir / "mctrl.pid"),
        server_log=_path(env, "MCTRL_SERVER_LOG", server_dir / "logs" / "mctrl-server.log"),
        timeouts=timeouts,
        redis_url=env.get("MCTRL_REDIS_URL") or DEFAULT_REDIS_URL,
    )
