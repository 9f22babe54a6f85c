"""Per-login state and its single teardown path."""

from __future__ import annotations

import asyncio
from typing import Optional

from sonarcli.output import debug


class AuthSession:
    """Resources of one login attempt and the one-shot cell holding its outcome.

    Every racing branch reports through :meth:`settle`; only the first call
    counts. Every exit path of the login calls :meth:`dispose`, which
    releases the listener, the deadline timer and the prompt task exactly
    once no matter how often it is invoked.

    The session must be created inside a running event loop.
    """

    def __init__(self) -> None:
        self._loop = asyncio.get_running_loop()
        self.result: asyncio.Future[str] = self._loop.create_future()
        self.listener = None
        self.timer: Optional[asyncio.TimerHandle] = None
        self.prompt_task: Optional[asyncio.Task] = None
        self._disposed = False

    @property
    def settled(self) -> bool:
        """Whether an outcome has been recorded."""
        return self.result.done()

    @property
    def disposed(self) -> bool:
        return self._disposed

    def settle(self, token: Optional[str] = None, error: Optional[BaseException] = None) -> bool:
        """Record the outcome unless one is already recorded.

        Returns:
            ``True`` if this call won, ``False`` if it was discarded.
        """
        if self.result.done():
            return False
        if error is not None:
            self.result.set_exception(error)
        else:
            self.result.set_result(token)
        return True

    def start_deadline(self, seconds: float, error: BaseException) -> None:
        """Settle with *error* after *seconds* unless something settles first."""
        self.timer = self._loop.call_later(seconds, self.settle, None, error)

    async def dispose(self) -> None:
        """Release the timer, the prompt and the listener. Idempotent."""
        if self._disposed:
            return
        self._disposed = True

        if self.timer is not None:
            self.timer.cancel()

        if self.prompt_task is not None and not self.prompt_task.done():
            self.prompt_task.cancel()
        if self.prompt_task is not None:
            await asyncio.gather(self.prompt_task, return_exceptions=True)

        if self.listener is not None:
            try:
                await self.listener.close()
            except Exception as exc:
                debug(f"Loopback listener shutdown error: {exc}")
