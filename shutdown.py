"""Interrupt handling - cooperative stop with a hard cutoff"""
import asyncio
import logging
import signal

from sources.tibber import SessionHandle, send_stop

logger = logging.getLogger(__name__)

# Seconds between the interrupt and forced cancellation
HARD_CUTOFF = 10.0


class ShutdownCoordinator:
    """
    Turns SIGINT/SIGTERM into a cooperative stop of the session.

    The first interrupt sets the soft-exit flag, sends "stop" for an active
    subscription and arms a hard cutoff that cancels the session task if it
    has not finished by then. Later interrupts are ignored.
    """

    def __init__(self, handle: SessionHandle, cutoff: float = HARD_CUTOFF):
        self.handle = handle
        self.cutoff = cutoff
        self.cutoff_fired = False
        self._task: asyncio.Task | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._pending: set[asyncio.Task] = set()

    def interrupt(self) -> None:
        """Interrupt handler body. Runs on the event loop."""
        if self.handle.stopping:
            logger.info("Shutdown already in progress.")
            return

        logger.info(f"Interrupt received, stopping (hard cutoff in {self.cutoff:g}s)...")
        loop = asyncio.get_running_loop()

        # Queue the stop before waking the session, so it goes out first
        if self.handle.subscription_active:
            task = loop.create_task(send_stop(self.handle))
            self._pending.add(task)
            task.add_done_callback(self._stop_sent)

        self.handle.request_stop()
        self._timer = loop.call_later(self.cutoff, self._hard_cutoff)

    def _stop_sent(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Could not send stop: {task.exception()!r}")

    def _hard_cutoff(self) -> None:
        if self._task is not None and not self._task.done():
            logger.warning(f"No clean shutdown within {self.cutoff:g}s, cancelling.")
            self.cutoff_fired = True
            self._task.cancel()

    def _install(self, loop: asyncio.AbstractEventLoop) -> dict:
        """Install handlers. Returns signal -> previous handler (None for loop handlers)."""
        installed = {}
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.interrupt)
            except NotImplementedError:
                # No loop signal support (Windows): hop onto the loop from the handler
                previous = signal.signal(
                    sig, lambda *_: loop.call_soon_threadsafe(self.interrupt)
                )
                installed[sig] = previous if previous is not None else signal.SIG_DFL
                continue
            installed[sig] = None
        return installed

    async def run(self, coro) -> None:
        """
        Run the session coroutine with interrupt handling installed.

        Returns normally after a clean stop or after the hard cutoff.
        """
        loop = asyncio.get_running_loop()
        installed = self._install(loop)
        self._task = asyncio.ensure_future(coro)
        try:
            await self._task
        except asyncio.CancelledError:
            if not self.cutoff_fired:
                raise
            logger.warning("Session cancelled by hard cutoff.")
        finally:
            if self._timer is not None:
                self._timer.cancel()
            for sig, previous in installed.items():
                if previous is None:
                    loop.remove_signal_handler(sig)
                else:
                    signal.signal(sig, previous)
