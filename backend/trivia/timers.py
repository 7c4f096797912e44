from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict

logger = logging.getLogger(__name__)

TimeoutCallback = Callable[[str, int], Awaitable[None]]


class QuestionTimer:
    """One cancellable auto-advance task per game.

    Every arm or cancel bumps the game's generation. The callback receives the
    generation it was armed with and must compare it against ``is_current``
    once it holds the game lock; a mismatch means the timer went stale while
    it was waiting.
    """

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}
        self._generation: Dict[str, int] = {}

    def arm(self, game_id: str, delay_ms: int, callback: TimeoutCallback) -> int:
        self.cancel(game_id)
        generation = self._generation[game_id]
        self._tasks[game_id] = asyncio.create_task(self._fire(game_id, generation, delay_ms, callback))
        return generation

    def cancel(self, game_id: str) -> None:
        self._generation[game_id] = self._generation.get(game_id, 0) + 1
        task = self._tasks.pop(game_id, None)
        # The firing task cancels its own handle while advancing; let it finish.
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def is_current(self, game_id: str, generation: int) -> bool:
        return self._generation.get(game_id) == generation

    def is_armed(self, game_id: str) -> bool:
        task = self._tasks.get(game_id)
        return task is not None and not task.done()

    def forget(self, game_id: str) -> None:
        self.cancel(game_id)
        self._generation.pop(game_id, None)

    def cancel_all(self) -> None:
        for game_id in list(self._tasks):
            self.cancel(game_id)

    async def _fire(self, game_id: str, generation: int, delay_ms: int, callback: TimeoutCallback) -> None:
        await asyncio.sleep(max(0, delay_ms) / 1000)
        try:
            await callback(game_id, generation)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("question timer for game %s failed", game_id)
