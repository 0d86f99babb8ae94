from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from mctrl.errors import UnknownWorld

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class World:
    """A named save directory the server can be pointed at."""

    id: str
    directory: Path
    last_activated: datetime | None = None

    @property
    def name(self) -> str:
        return display_name(self.id)


def display_name(world_id: str) -> str:
    """`dark_forest` -> `Dark Forest`."""

    return " ".join(w[:1].upper() + w[1:] for w in world_id.split("_"))


def _same_path(a: Path, b: Path) -> bool:
    return a.resolve(strict=False) == b.resolve(strict=False)


class WorldRegistry:
    """The known worlds, keyed by id.

    Built either from an explicit list or from the subdirectories of a worlds
    directory (symlinks skipped); the latter is rescanned on `refresh`.
    """

    def __init__(self, worlds: Iterable[World], *, source_dir: Path | None = None) -> None:
        self._source_dir = source_dir
        self._by_id: dict[str, World] = {}
        self._load(worlds)

    @staticmethod
    def from_directory(worlds_dir: Path) -> WorldRegistry:
        return WorldRegistry(_scan(worlds_dir), source_dir=worlds_dir)

    def _load(self, worlds: Iterable[World]) -> None:
        by_id: dict[str, World] = {}
        for w in worlds:
            if w.id in by_id:
                raise ValueError(f"Duplicate world id: {w.id}")
            by_id[w.id] = w
        self._by_id = by_id

    def refresh(self) -> None:
        if self._source_dir is None:
            return
        try:
            self._load(_scan(self._source_dir))
        except OSError as e:
            logger.warning("Failed to rescan worlds in %s: %s", self._source_dir, e)

    def __contains__(self, world_id: object) -> bool:
        return world_id in self._by_id

    def __len__(self) -> int:
        return len(self._by_id)

    def get(self, world_id: str) -> World | None:
        return self._by_id.get(world_id)

    def require(self, world_id: str) -> World:
        world = self.get(world_id)
        if world is None:
            raise UnknownWorld(world_id)
        return world

    def values(self) -> list[World]:
        return sorted(self._by_id.values(), key=lambda w: w.id)

    def find_by_level(self, level: str, *, server_dir: Path) -> World | None:
        """Map a `level-name` value (relative to the server dir or absolute) to a world."""

        target = server_dir / level
        return next((w for w in self._by_id.values() if _same_path(w.directory, target)), None)


def level_for(world: World, *, server_dir: Path) -> str:
    """The `level-name` value that points the server at `world`."""

    directory = world.directory.resolve(strict=False)
    try:
        return directory.relative_to(server_dir.resolve(strict=False)).as_posix()
    except ValueError:
        return str(directory)


def _scan(worlds_dir: Path) -> list[World]:
    worlds: list[World] = []
    for entry in sorted(worlds_dir.iterdir()):
        if entry.is_symlink() or not entry.is_dir():
            continue
        worlds.append(World(id=entry.name, directory=entry))
    return worlds
