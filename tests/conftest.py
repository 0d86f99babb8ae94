from __future__ import annotations

import os
import socket
import struct
import threading
import time
from collections.abc import Callable, Generator
from datetime import UTC, datetime
from pathlib import Path

import fakeredis
import pytest

from mctrl.errors import LaunchError, RconConnectionError
from mctrl.rcon.codec import AUTH_RESPONSE, Packet, PacketReader, PacketType
from mctrl.rcon.queries import LIST, STOP, TICK_QUERY
from mctrl.server.properties import ServerProperties
from mctrl.server.supervisor import LaunchSpec, ProcessHandle, StopResult
from mctrl.settings import SwitchTimeouts
from mctrl.switcher import WorldSwitcher
from mctrl.worlds import WorldRegistry

PASSWORD = "hunter2"

TICK_OUTPUT = (
    "The game is running normally\n"
    "Target tick rate: 20.0 per second.\n"
    "Average time per tick: 13.2ms (Target: 50.0ms)\n"
    "Percentiles: P50: 13.0ms P95: 16.0ms P99: 18.6ms, sample: 100"
)


@pytest.fixture(autouse=True)
def _hermetic_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's MCTRL_* variables (or .env) out of the tests."""

    for name in list(os.environ):
        if name.startswith("MCTRL_"):
            monkeypatch.delenv(name, raising=False)


def raw_packet(request_id: int, kind: int, payload: bytes = b"") -> bytes:
    # Bypasses the codec's validation so tests can send what a real server would.
    return struct.pack("<iii", len(payload) + 10, request_id, kind) + payload + b"\x00\x00"


class FakeRconServer:
    """A localhost RCON server that behaves like the vanilla one.

    - auth replies with the request id on success, -1 on a wrong password
    - a command's response is split into packets of `fragment_size` bytes
    - the empty sentinel command is answered with "Unknown request 0"
    """

    def __init__(
        self,
        *,
        password: str = PASSWORD,
        responses: dict[str, str] | None = None,
        fragment_size: int = 4096,
    ) -> None:
        self.password = password
        self.responses = dict(responses or {})
        self.fragment_size = fragment_size
        self.command_delay: dict[str, float] = {}
        # Commands are read but never answered.
        self.silent = False
        # Vanilla answers auth with type 2; type 0 is just as valid on the wire.
        self.auth_reply_type: int = AUTH_RESPONSE
        # Send an empty RESPONSE_VALUE ahead of the auth response.
        self.auth_preamble = False
        # Sent instead of a command response.
        self.garbage: bytes | None = None

        self.received: list[Packet] = []
        self.connections = 0
        self._conns: list[socket.socket] = []
        self._lock = threading.Lock()

        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._listener.bind(("127.0.0.1", 0))
        self._listener.listen(8)
        self.port: int = self._listener.getsockname()[1]
        self._thread = threading.Thread(target=self._serve, name="fake-rcon", daemon=True)
        self._thread.start()

    @property
    def commands(self) -> list[str]:
        with self._lock:
            return [p.text for p in self.received if p.type is PacketType.COMMAND and p.payload]

    def kick(self) -> None:
        """Drop every open client connection."""

        with self._lock:
            conns, self._conns = self._conns, []
        for conn in conns:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            conn.close()

    def close(self) -> None:
        self._listener.close()
        self.kick()

    def _serve(self) -> None:
        while True:
            try:
                conn, _ = self._listener.accept()
            except OSError:
                return
            with self._lock:
                self.connections += 1
                self._conns.append(conn)
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()

    def _handle(self, conn: socket.socket) -> None:
        reader = PacketReader()
        authed = False
        while True:
            try:
                chunk = conn.recv(4096)
            except OSError:
                return
            if not chunk:
                return
            reader.feed(chunk)
            for packet in reader.packets():
                with self._lock:
                    self.received.append(packet)
                try:
                    if packet.type is PacketType.AUTH:
                        authed = packet.text == self.password
                        if self.auth_preamble:
                            conn.sendall(raw_packet(packet.request_id, PacketType.RESPONSE_VALUE))
                        conn.sendall(raw_packet(packet.request_id if authed else -1, self.auth_reply_type))
                    elif not authed:
                        conn.sendall(raw_packet(-1, PacketType.RESPONSE_VALUE))
                    else:
                        self._answer(conn, packet)
                except OSError:
                    return

    def _answer(self, conn: socket.socket, packet: Packet) -> None:
        if self.silent:
            return
        command = packet.text
        if not command:
            conn.sendall(raw_packet(packet.request_id, PacketType.RESPONSE_VALUE, b"Unknown request 0"))
            return
        if self.garbage is not None:
            conn.sendall(self.garbage)
            return
        time.sleep(self.command_delay.get(command, 0.0))
        body = self.responses.get(command, f"Unknown command: {command}").encode("utf-8")
        pieces = [body[i : i + self.fragment_size] for i in range(0, len(body), self.fragment_size)] or [b""]
        conn.sendall(b"".join(raw_packet(packet.request_id, PacketType.RESPONSE_VALUE, p) for p in pieces))


@pytest.fixture()
def rcon_server() -> Generator[Callable[..., FakeRconServer], None, None]:
    servers: list[FakeRconServer] = []

    def _make(**kwargs) -> FakeRconServer:  # type: ignore[no-untyped-def]
        server = FakeRconServer(**kwargs)
        servers.append(server)
        return server

    yield _make
    for server in servers:
        server.close()


# --- world switching fakes ------------------------------------------------------


class FakeGameServer:
    """Shared state between FakeSession and FakeSupervisor: one pretend server."""

    def __init__(self, properties: ServerProperties) -> None:
        self.properties = properties
        self.running = True
        self.level: str | None = properties.level_name()
        # Levels whose server never answers RCON once started.
        self.unresponsive_levels: set[str] = set()
        # Levels whose launch fails outright.
        self.unlaunchable_levels: set[str] = set()
        self.events: list[str] = []
        self.players = ["alex", "steve"]
        # Drop the RCON connection on `stop` and keep accepting connections
        # for a few more polls while shutting down.
        self.drop_on_stop = False
        self.shutdown_polls = 0


class FakeSession:
    def __init__(self, server: FakeGameServer) -> None:
        self.server = server
        self.address = ("127.0.0.1", 25575)
        self.commands: list[str] = []
        # Raised by every execute when set.
        self.error: Exception | None = None

    def _reachable(self) -> bool:
        s = self.server
        return s.running and s.level not in s.unresponsive_levels

    def connect(self) -> None:
        s = self.server
        if s.shutdown_polls:
            s.shutdown_polls -= 1
            if not s.shutdown_polls:
                s.running = False
        if not self._reachable():
            raise RconConnectionError("Connection refused")
        s.events.append("rcon:connect")

    def execute(self, command: str, timeout: float) -> str:
        self.commands.append(command)
        if self.error is not None:
            raise self.error
        if not self._reachable():
            raise RconConnectionError("Connection refused")
        self.server.events.append(f"rcon:{command}")
        if command == STOP:
            if self.server.drop_on_stop:
                self.server.shutdown_polls = 3
                raise RconConnectionError("Connection reset by peer")
            self.server.running = False
            return "Stopping the server"
        if command == LIST:
            n = len(self.server.players)
            return f"There are {n} of a max of 20 players online: {', '.join(self.server.players)}"
        if command == TICK_QUERY:
            return TICK_OUTPUT
        return f"ran {command}"

    def close(self) -> None:
        pass


class FakeSupervisor:
    def __init__(self, server: FakeGameServer) -> None:
        self.server = server
        self.stop_result = StopResult.stopped
        # `send_signal` of every request_graceful_stop call.
        self.signals: list[bool] = []
        # Blocks `start` until set, to keep a switch in flight.
        self.start_gate: threading.Event | None = None
        self._next_pid = 4000

    def _handle(self, *, adopted: bool = False) -> ProcessHandle:
        self._next_pid += 1
        return ProcessHandle(pid=self._next_pid, process=None, started_at=datetime.now(tz=UTC), adopted=adopted)  # type: ignore[arg-type]

    def start(self, working_directory: Path, spec: LaunchSpec) -> ProcessHandle:
        if self.start_gate is not None:
            self.start_gate.wait(5)
        level = self.server.properties.level_name()
        self.server.events.append(f"start:{level}")
        if level in self.server.unlaunchable_levels:
            raise LaunchError(f"Failed to start the server for {level}")
        self.server.level = level
        self.server.shutdown_polls = 0
        self.server.running = True
        return self._handle()

    def adopt(self, pid_file: Path) -> ProcessHandle | None:
        return self._handle(adopted=True) if self.server.running else None

    def is_running(self, handle: ProcessHandle) -> bool:
        return self.server.running

    def exit_status(self, handle: ProcessHandle) -> int | None:
        return None if self.server.running else 1

    def request_graceful_stop(self, handle: ProcessHandle, timeout: float, *, send_signal: bool = True) -> StopResult:
        self.server.events.append("supervisor:stop")
        self.signals.append(send_signal)
        if self.stop_result is not StopResult.still_running:
            self.server.running = False
        return self.stop_result


PROPERTIES_TEXT = (
    "#Minecraft server properties\n"
    "#Sat Oct 17 10:00:00 UTC 2026\n"
    "enable-rcon=true\n"
    "level-name=worlds/alpha\n"
    "motd=A Minecraft Server\n"
    "\n"
    "rcon.password=hunter2\n"
    "rcon.port=25575\n"
)


@pytest.fixture()
def server_dir(tmp_path: Path) -> Path:
    for name in ("alpha", "beta", "dark_forest"):
        (tmp_path / "worlds" / name).mkdir(parents=True)
    (tmp_path / "server.properties").write_text(PROPERTIES_TEXT, encoding="utf-8")
    return tmp_path


@pytest.fixture()
def fake_redis() -> fakeredis.FakeRedis:
    return fakeredis.FakeRedis(decode_responses=True)


FAST_TIMEOUTS = SwitchTimeouts(command=1.0, stop=1.0, verify=0.3, poll_interval=0.01, max_auth_failures=3)


class SwitchRig:
    """A WorldSwitcher wired to fakes, plus handles on the fakes."""

    def __init__(self, *, server_dir: Path, r: fakeredis.FakeRedis, adopt: bool = True) -> None:
        self.server_dir = server_dir
        self.r = r
        self.properties = ServerProperties(server_dir / "server.properties")
        self.server = FakeGameServer(self.properties)
        self.session = FakeSession(self.server)
        self.supervisor = FakeSupervisor(self.server)
        self.adopt = adopt

    def build(self) -> WorldSwitcher:
        launch = LaunchSpec(command=("java", "-jar", "server.jar", "nogui"), pid_file=self.server_dir / "mctrl.pid" if self.adopt else None)
        return WorldSwitcher(
            r=self.r,
            worlds=WorldRegistry.from_directory(self.server_dir / "worlds"),
            properties=self.properties,
            server_dir=self.server_dir,
            session=self.session,  # type: ignore[arg-type]
            supervisor=self.supervisor,  # type: ignore[arg-type]
            launch=launch,
            timeouts=FAST_TIMEOUTS,
        )


@pytest.fixture()
def rig(server_dir: Path, fake_redis: fakeredis.FakeRedis) -> SwitchRig:
    return SwitchRig(server_dir=server_dir, r=fake_redis)
