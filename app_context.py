from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from config import Config
from core.generation_queue import GenerationQueue
from sdapi_client import SDWebUIClient


@dataclass(slots=True)
class AppContext:
    cfg: Config
    client: SDWebUIClient
    root: Path = Path(".")
    queue: GenerationQueue | None = field(default=None)

    def attach_queue(self, queue: GenerationQueue) -> None:
        self.queue = queue

    def has_pending_work(self) -> bool:
        return self.queue is not None and self.queue.is_pending()

    async def interrupt_pending_work(self) -> bool:
        """Stop the server's current job and drop the rest of the queue."""
        if self.queue is None or not self.has_pending_work():
            return False
        await self.client.interrupt()
        await self.queue.cancel()
        return True

    async def close(self) -> None:
        await self.client.close()


def create_app_context(cfg: Config, *, root: Path | str = ".") -> AppContext:
    return AppContext(cfg=cfg, client=SDWebUIClient(cfg), root=Path(root))
