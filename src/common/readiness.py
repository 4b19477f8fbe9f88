from __future__ import annotations


class ReadyFlag:
    """One-way latch flipped by an API watcher once its target API is usable.

    Reads never block; a stale ``False`` only defers a pass.
    """

    __slots__ = ("_ready",)

    def __init__(self) -> None:
        self._ready = False

    def mark_ready(self) -> None:
        self._ready = True

    def is_ready(self) -> bool:
        return self._ready

    def __repr__(self) -> str:
        return f"ReadyFlag(ready={self._ready})"


__all__ = ["ReadyFlag"]
