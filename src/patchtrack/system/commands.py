from __future__ import annotations

import threading
from dataclasses import dataclass


@dataclass
class Command:
    name: str
    params: str = ""


@dataclass
class CommandResult:
    command: str
    ok: bool
    reason: str = ""


class CommandQueue:
    """Commands pushed from any thread, drained by the tracking loop once per frame."""

    def __init__(self):
        self._lock = threading.Lock()
        self._items: list[Command] = []

    def push(self, name: str, params: str = "") -> None:
        with self._lock:
            self._items.append(Command(name, params))

    def drain(self) -> list[Command]:
        with self._lock:
            items, self._items = self._items, []
        return items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
