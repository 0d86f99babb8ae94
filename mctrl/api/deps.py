from __future__ import annotations

from mctrl.singleton import get_switcher as _get_switcher
from mctrl.switcher import WorldSwitcher


def get_switcher() -> WorldSwitcher:
    # Tests override this dependency with a switcher wired to fakes.
    return _get_switcher()
