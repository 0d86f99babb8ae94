from __future__ import annotations

import contextlib
import logging
import os
import re
import shutil
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from mctrl.errors import ConfigWriteError, PropertiesError

logger = logging.getLogger(__name__)

LEVEL_NAME_KEY = "level-name"
RCON_PORT_KEY = "rcon.port"
RCON_PASSWORD_KEY = "rcon.password"
DEFAULT_LEVEL_NAME = "world"

_COMMENT_PREFIXES = ("#", "!")
_ESCAPED = re.compile(r"\\(.)")


def _unescape(value: str) -> str:
    return _ESCAPED.sub(r"\1", value)


def _escape(value: str) -> str:
    # java.util.Properties escaping for the characters that show up in paths.
    return value.replace("\\", "\\\\").replace(":", "\\:").replace("=", "\\=")


def _split_line(line: str) -> tuple[str, str] | None:
    stripped = line.strip()
    if not stripped or stripped.startswith(_COMMENT_PREFIXES):
        return None
    key, sep, value = stripped.partition("=")
    if not sep:
        return None
    return key.strip(), value.strip()


@dataclass(frozen=True, slots=True)
class RconProperties:
    port: int
    password: str


class ServerProperties:
    """Read and atomically rewrite a Minecraft `server.properties` file.

    Rewrites only touch the lines of the keys being changed; comments, ordering,
    blank lines and line endings are kept as they are.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def _read_text(self) -> str:
        try:
            with open(self.path, encoding="utf-8", newline="") as f:
                return f.read()
        except OSError as e:
            raise PropertiesError(f"Failed to open {self.path}: {e}") from e

    def read(self) -> dict[str, str]:
        props: dict[str, str] = {}
        for line in self._read_text().splitlines():
            pair = _split_line(line)
            if pair is not None:
                props[pair[0]] = pair[1]
        return props

    def get(self, key: str, default: str | None = None) -> str | None:
        return self.read().get(key, default)

    def raw_level_name(self) -> str:
        """The `level-name` value exactly as written in the file (still escaped)."""

        return self.read().get(LEVEL_NAME_KEY) or DEFAULT_LEVEL_NAME

    def level_name(self) -> str:
        return _unescape(self.raw_level_name())

    def rcon_properties(self) -> RconProperties:
        props = self.read()
        try:
            port = int(props[RCON_PORT_KEY])
        except (KeyError, ValueError) as e:
            raise PropertiesError(f"{self.path} has a missing or invalid {RCON_PORT_KEY} property") from e
        if not 0 < port < 65536:
            raise PropertiesError(f"{self.path} has an invalid {RCON_PORT_KEY} property: {port}")
        password = props.get(RCON_PASSWORD_KEY)
        if password is None:
            raise PropertiesError(f"{self.path} does not contain an {RCON_PASSWORD_KEY} property")
        return RconProperties(port=port, password=password)

    def set_level_name(self, value: str) -> None:
        self.update({LEVEL_NAME_KEY: _escape(value)})

    def update(self, changes: Mapping[str, str]) -> None:
        """Apply `changes` with a write-to-temp-then-rename.

        A failure at any point before the rename leaves the old file untouched.
        Raises `ConfigWriteError` on I/O failure.
        """

        try:
            original = self._read_text()
        except PropertiesError as e:
            raise ConfigWriteError(str(e)) from e

        lines = original.splitlines(keepends=True)
        pending = dict(changes)
        out: list[str] = []
        for line in lines:
            pair = _split_line(line)
            if pair is not None and pair[0] in pending:
                ending = line[len(line.rstrip("\r\n")) :]
                out.append(f"{pair[0]}={pending.pop(pair[0])}{ending}")
            else:
                out.append(line)

        if pending:
            if out and not out[-1].endswith(("\n", "\r")):
                out[-1] += "\n"
            out.extend(f"{key}={value}\n" for key, value in pending.items())

        self._atomic_write("".join(out))
        logger.info("Updated %s: %s", self.path, ", ".join(sorted(changes)))

    def _atomic_write(self, text: str) -> None:
        directory = self.path.parent
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=directory)
        except OSError as e:
            raise ConfigWriteError(f"Failed to create a temporary file next to {self.path}: {e}") from e

        tmp = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            with contextlib.suppress(OSError):
                shutil.copymode(self.path, tmp)
            os.replace(tmp, self.path)
        except BaseException as e:
            with contextlib.suppress(OSError):
                tmp.unlink()
            if isinstance(e, OSError):
                raise ConfigWriteError(f"Failed to write an updated {self.path}: {e}") from e
            raise

        _fsync_directory(directory)


def _fsync_directory(directory: Path) -> None:
    if os.name != "posix":
        return
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError as e:
        logger.debug("fsync of %s failed: %s", directory, e)
    finally:
        os.close(fd)
