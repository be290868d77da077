from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from types import TracebackType

from tqdm import tqdm

logger = logging.getLogger(__name__)

ProgressFetcher = Callable[[], Awaitable["tuple[float, float] | None"]]

# Never show a finished bar before the generation call itself returns.
MAX_POLLED_PROGRESS = 0.99


class ProgressMonitor:
    """
    Poll the server's progress endpoint while a generation call is in flight.

    Used as ``async with ProgressMonitor(client.get_progress): await ...``.
    The bar only reflects what the server reports; a failed poll is skipped.
    """

    def __init__(
        self,
        fetch: ProgressFetcher,
        *,
        interval: float = 0.5,
        desc: str = "Generating",
        disable: bool | None = None,
    ) -> None:
        self._fetch = fetch
        self._interval = interval
        self._desc = desc
        self._disable = disable
        self._bar: tqdm | None = None
        self._task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> "ProgressMonitor":
        self._bar = tqdm(
            total=100,
            desc=self._desc,
            bar_format="{desc}: {percentage:3.0f}%|{bar}| Elapsed: {elapsed}{postfix}",
            leave=False,
            disable=self._disable,
        )
        self._bar.set_postfix_str("ETA: N/A", refresh=False)
        self._task = asyncio.create_task(self._poll())
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._bar is not None:
            if exc_type is None:
                self._bar.update(self._bar.total - self._bar.n)
            self._bar.close()
            self._bar = None

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            result = await self._fetch()
            if result is None or self._bar is None:
                continue
            progress, eta = result
            target = int(min(MAX_POLLED_PROGRESS, max(0.0, progress)) * 100)
            if target > self._bar.n:
                self._bar.update(target - self._bar.n)
            self._bar.set_postfix_str(f"ETA: {round(eta, 2)}s", refresh=True)
