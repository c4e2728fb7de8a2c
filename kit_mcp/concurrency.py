"""Join helpers for fanning out independent Kit API reads."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Sequence, TypeVar

import anyio

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Settled(Generic[T]):
    """Outcome of one task in a settle-all join."""

    label: str
    value: T | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def value_or_none(self) -> T | None:
        return self.value if self.ok else None


async def gather_settled(
    calls: Sequence[tuple[str, Callable[[], Awaitable[Any]]]],
) -> list[Settled[Any]]:
    """
    Run every call concurrently and wait for all of them to finish.

    A failing call never cancels its siblings; its exception is captured in
    the returned ``Settled`` and logged as a warning. Results keep the order
    of ``calls``.
    """
    results: list[Settled[Any] | None] = [None] * len(calls)

    async def _run(index: int, label: str, call: Callable[[], Awaitable[Any]]) -> None:
        try:
            results[index] = Settled(label=label, value=await call())
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to fetch %s: %s", label, exc)
            results[index] = Settled(label=label, error=exc)

    async with anyio.create_task_group() as tg:
        for index, (label, call) in enumerate(calls):
            tg.start_soon(_run, index, label, call)

    return [result for result in results if result is not None]
