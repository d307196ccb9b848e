"""Background worker pool for song generation."""

import asyncio
import logging
from typing import List, Optional

from .errors import SongForgeError

logger = logging.getLogger(__name__)


class GenerationQueue:
    """
    Runs queued songs through the orchestrator on ``workers`` asyncio tasks.

    A failed run has already been recorded on the song row by the orchestrator,
    so workers only log it and move on.
    """

    def __init__(self, orchestrator, workers: int = 2):
        self.orchestrator = orchestrator
        self.workers = max(1, workers)
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._tasks = [
            asyncio.create_task(self._worker(n), name=f"songforge-worker-{n}")
            for n in range(self.workers)
        ]
        logger.info("[Jobs] Started %d generation workers", self.workers)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._queue = None
        logger.info("[Jobs] Workers stopped")

    def submit(self, song_id: str) -> None:
        if self._queue is None:
            raise RuntimeError("Generation queue is not running")
        self._queue.put_nowait(song_id)
        logger.info("[Jobs] Queued song=%s (%d waiting)", song_id, self._queue.qsize())

    async def join(self) -> None:
        """Wait until every submitted song has been processed"""
        if self._queue is not None:
            await self._queue.join()

    async def _worker(self, number: int) -> None:
        queue = self._queue
        while True:
            song_id = await queue.get()
            try:
                await self.orchestrator.run(song_id)
            except SongForgeError as e:
                logger.warning("[Jobs] worker=%d song=%s ended with %s: %s", number, song_id, e.__class__.__name__, e)
            except Exception:
                logger.exception("[Jobs] worker=%d song=%s crashed", number, song_id)
            finally:
                queue.task_done()
