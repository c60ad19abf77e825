from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

import structlog

from tradewatch.notify.dispatch import DispatchClient
from tradewatch.utils.time import utc_now_s


@dataclass(slots=True)
class WorkerStats:
    events: int = 0
    dropped: int = 0       # malformed / untracked events
    fired: int = 0         # evaluator said yes and cooldown was free
    suppressed: int = 0    # evaluator said yes but cooldown was active
    dispatched: int = 0
    failed: int = 0


class DispatchingWorker(ABC):
    """
    Shared plumbing for workers that turn fired triggers into backend calls.

    Each dispatch runs in its own task so a slow backend never holds up the
    stream's event handler. Failures are logged with full context and not
    retried: the cooldown has already been committed.
    """

    def __init__(
        self,
        name: str,
        dispatcher: DispatchClient,
        *,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.name = name
        self.dispatcher = dispatcher
        self.clock = clock or utc_now_s
        self.stats = WorkerStats()
        self._inflight: set[asyncio.Task] = set()
        self._log = structlog.get_logger("worker").bind(worker=name)

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    def _spawn_dispatch(self, payload: Mapping[str, Any], path: str, **ctx: Any) -> asyncio.Task:
        task = asyncio.create_task(self._dispatch(payload, path, ctx), name=f"dispatch-{self.name}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _dispatch(self, payload: Mapping[str, Any], path: str, ctx: dict) -> None:
        try:
            result = await self.dispatcher.send(payload, path)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats.failed += 1
            self._log.error(
                "dispatch_failed",
                err=str(e),
                err_type=type(e).__name__,
                status=getattr(e, "status", None),
                body=(getattr(e, "body", "") or "")[:500],
                path=path,
                **ctx,
            )
            return
        self.stats.dispatched += 1
        self._log.info("dispatch_ok", status=result.status, delivered=result.delivered, **ctx)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight dispatches (e.g. on shutdown)."""
        pending = list(self._inflight)
        if not pending:
            return
        await asyncio.wait(pending, timeout=timeout)

    @property
    def inflight(self) -> int:
        return len(self._inflight)
