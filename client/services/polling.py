import asyncio
from typing import Awaitable, Callable, Optional

from client.errors import ClientError
from client.utils.audit import dbg
from client.utils.tasks import cancel_task


class PollingScheduler:
    """Adaptive periodic refresh used while the push channel is down.

    ``fast_ticks`` ticks at ``fast_interval``, then ``slow_interval`` until stopped.
    """

    def __init__(self,
                 tick: Callable[[], Awaitable[None]],
                 fast_interval: float = 1.0,
                 fast_ticks: int = 6,
                 slow_interval: float = 4.0,
                 log_id: Callable[[], Optional[str]] = lambda: None,
               ):
        self._tick = tick
        self.fast_interval = fast_interval
        self.fast_ticks = fast_ticks
        self.slow_interval = slow_interval
        self._log_id = log_id
        self.interval: float = fast_interval
        self.fast_remaining: int = fast_ticks
        self.ticks: int = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self.stop()
        self.interval = self.fast_interval
        self.fast_remaining = self.fast_ticks
        self.ticks = 0
        self._task = asyncio.get_running_loop().create_task(self._run())
        dbg(self._log_id(), f"polling started fast={self.fast_ticks}x{self.fast_interval}s slow={self.slow_interval}s")

    def stop(self) -> None:
        task, self._task = self._task, None
        cancel_task(task)

    async def _run(self) -> None:
        me = asyncio.current_task()
        # stop() from inside a tick only detaches the task
        while self._task is me:
            await asyncio.sleep(self.interval)
            if self._task is not me:
                break
            try:
                await self._tick()
            except ClientError as e:
                dbg(self._log_id(), f"poll tick failed: {e}")
            self.ticks += 1
            if self.fast_remaining > 0:
                self.fast_remaining -= 1
                if self.fast_remaining == 0:
                    self.interval = self.slow_interval
