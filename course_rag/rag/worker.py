"""Background event loop for synchronous hosts.

A UI or other blocking host hands engine coroutines to the worker and gets a
``concurrent.futures.Future`` back, so initialization and answering never run
on the host's own thread.
"""
import asyncio
import threading
from concurrent.futures import Future
from typing import Any, Coroutine, Optional

import structlog

logger = structlog.get_logger()


class BackgroundWorker:
    """Daemon thread running its own asyncio event loop."""

    def __init__(self, name: str = "course-rag-worker"):
        self.name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "BackgroundWorker":
        """Start the loop thread (no-op if already running)."""
        if self.is_running:
            return self

        self._ready.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        self._ready.wait()
        logger.info("background_worker_started", name=self.name)
        return self

    def _run(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        self._ready.set()
        try:
            loop.run_forever()
        finally:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()
            self._loop = None

    def submit(self, coro: Coroutine[Any, Any, Any]) -> Future:
        """Schedule a coroutine on the worker loop.

        Args:
            coro: Coroutine to run

        Returns:
            Future resolving to the coroutine's result

        Raises:
            RuntimeError: If the worker is not running
        """
        if not self.is_running or self._loop is None:
            coro.close()
            raise RuntimeError("Background worker is not running")
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the loop, cancelling whatever is still running on it."""
        if not self.is_running or self._loop is None:
            return

        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout)
        logger.info("background_worker_stopped", name=self.name)
        self._thread = None

    def __enter__(self) -> "BackgroundWorker":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
