from __future__ import annotations

from mctrl.infra.redis_client import create_redis
from mctrl.rcon.session import RconSession
from mctrl.server.properties import ServerProperties
from mctrl.server.supervisor import LaunchSpec, ProcessSupervisor
from mctrl.settings import Settings, settings_from_env
from mctrl.switcher import WorldSwitcher
from mctrl.worlds import WorldRegistry


_SWITCHER: WorldSwitcher | None = None


def build_switcher(settings: Settings) -> WorldSwitcher:
    session = RconSession(
        host=settings.rcon_host,
        port=settings.rcon_port,
        password=settings.rcon_password,
        connect_timeout=settings.timeouts.command,
    )
    launch = LaunchSpec(
        command=settings.launch_command,
        log_file=settings.server_log,
        pid_file=settings.pid_file,
    )
    return WorldSwitcher(
        r=create_redis(settings.redis_url, timeout=settings.timeouts.command),
        worlds=WorldRegistry.from_directory(settings.worlds_dir),
        properties=ServerProperties(settings.properties_file),
        server_dir=settings.server_dir,
        session=session,
        supervisor=ProcessSupervisor(),
        launch=launch,
        timeouts=settings.timeouts,
    )


def init_switcher(*, settings: Settings | None = None, switcher: WorldSwitcher | None = None) -> WorldSwitcher:
    """Build the process-wide switcher once and cache it.

    Safe to call multiple times; subsequent calls return the already built instance.
    Tests pass a prebuilt `switcher` wired to fakes.
    """

    global _SWITCHER
    if _SWITCHER is None:
        _SWITCHER = switcher or build_switcher(settings or settings_from_env())
    return _SWITCHER


def reset_switcher_for_tests() -> None:
    global _SWITCHER
    if _SWITCHER is not None:
        _SWITCHER.session.close()
    _SWITCHER = None


def get_switcher() -> WorldSwitcher:
    if _SWITCHER is None:
        raise RuntimeError("Switcher not initialized. Call init_switcher() at startup.")
    return _SWITCHER
