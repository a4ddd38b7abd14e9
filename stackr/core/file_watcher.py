"""Debounced watcher over the stacks directory."""

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path

import structlog
from watchfiles import awatch

logger = structlog.get_logger()

DEBOUNCE_MS = 2000
RESTART_DELAY = 5


class StacksWatcher:
    """Watches the stacks tree and calls back once per debounced batch of changes."""

    def __init__(
        self,
        stacks_dir: Path | str,
        on_change: Callable[[str], Awaitable[None]],
        debounce_ms: int = DEBOUNCE_MS,
    ):
        self.stacks_dir = Path(stacks_dir)
        self.on_change = on_change
        self.debounce_ms = debounce_ms
        self._watch_task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()
        self._is_watching = False

    @property
    def is_watching(self) -> bool:
        return self._is_watching

    async def start_watching(self) -> None:
        """Start watching the stacks directory for changes."""
        if self._is_watching:
            logger.warning("Stacks watcher is already running")
            return

        if not self.stacks_dir.is_dir():
            logger.warning("Stacks directory does not exist", path=str(self.stacks_dir))
            return

        self._is_watching = True
        self._stop_event.clear()
        self._watch_task = asyncio.create_task(self._watch_files())
        logger.info("Started stacks watcher", path=str(self.stacks_dir))

    async def stop_watching(self) -> None:
        """Stop watching the stacks directory."""
        if not self._is_watching:
            return

        self._is_watching = False
        self._stop_event.set()
        if self._watch_task and not self._watch_task.done():
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass

        logger.info("Stopped stacks watcher")

    async def _watch_files(self) -> None:
        """Watch for file changes and trigger the callback."""
        while self._is_watching:
            try:
                async for changes in awatch(
                    self.stacks_dir,
                    debounce=self.debounce_ms,
                    recursive=True,
                    stop_event=self._stop_event,
                ):
                    if not self._is_watching:
                        break
                    # One callback per debounced batch, named after any changed path
                    _, changed_path = next(iter(changes))
                    logger.debug("Stack change detected", path=changed_path, changes=len(changes))
                    await self._handle_change(changed_path)
                return
            except asyncio.CancelledError:
                logger.debug("Stacks watcher cancelled")
                raise
            except Exception as e:
                logger.error("Stacks watcher error", error=str(e))
                if not self._is_watching:
                    return
                await asyncio.sleep(RESTART_DELAY)
                logger.info("Restarting stacks watcher after error")

    async def _handle_change(self, path: str) -> None:
        try:
            await self.on_change(path)
        except Exception as e:
            # Keep watching after a failed callback
            logger.error("Stack change handler failed", path=path, error=str(e))
