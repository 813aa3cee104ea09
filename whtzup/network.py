"""Connectivity observer driving the online/offline behaviour of the client.

NetworkMonitor has two feeds: the platform pushes state with set_online(),
or start() polls an async probe. Either way, handlers hear exactly one
transition per real change (RESTORED or LOST) and never block the caller.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Set

logger = logging.getLogger(__name__)

DEFAULT_PROBE_INTERVAL = 15.0


class ConnectivityTransition(str, Enum):
    RESTORED = "restored"
    LOST = "lost"


TransitionHandler = Callable[[ConnectivityTransition], Awaitable[None]]
Probe = Callable[[], Awaitable[bool]]


class NetworkMonitor:
    """Tracks is_online and fans transitions out to async handlers.

    Args:
        probe: Optional coroutine function returning current reachability.
        probe_interval: Seconds between probes when start() is running.
        initial_online: Starting state. The first observation that differs
            from it produces a transition.
    """

    def __init__(
        self,
        probe: Optional[Probe] = None,
        probe_interval: float = DEFAULT_PROBE_INTERVAL,
        initial_online: bool = False,
    ):
        self._probe = probe
        self.probe_interval = probe_interval
        self._online = initial_online
        self._handlers: List[TransitionHandler] = []
        self._tasks: Set[asyncio.Task] = set()
        self._probe_task: Optional[asyncio.Task] = None

    @property
    def is_online(self) -> bool:
        return self._online

    def add_handler(self, handler: TransitionHandler) -> None:
        self._handlers.append(handler)

    def set_online(self, online: bool) -> Optional[ConnectivityTransition]:
        """Record the current connectivity. Returns the transition, if any.

        Handlers are scheduled as tasks on the running loop; this method
        never awaits them.
        """
        online = bool(online)
        if online == self._online:
            return None

        self._online = online
        transition = ConnectivityTransition.RESTORED if online else ConnectivityTransition.LOST
        logger.info(f"Connectivity {transition.value}")

        for handler in list(self._handlers):
            self._schedule(handler, transition)
        return transition

    def _schedule(self, handler: TransitionHandler, transition: ConnectivityTransition) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop; dropping {transition.value} notification")
            return
        task = loop.create_task(self._run_handler(handler, transition))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_handler(
        self, handler: TransitionHandler, transition: ConnectivityTransition
    ) -> None:
        try:
            await handler(transition)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Connectivity handler failed on {transition.value}: {e}", exc_info=True)

    async def check(self) -> bool:
        """Run the probe once and record the result."""
        if self._probe is None:
            return self._online
        try:
            online = bool(await self._probe())
        except Exception as e:
            logger.debug(f"Connectivity probe failed: {e}")
            online = False
        self.set_online(online)
        return online

    async def _probe_loop(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self.probe_interval)

    def start(self) -> None:
        """Begin polling the probe on the running loop."""
        if self._probe is None or self._probe_task is not None:
            return
        self._probe_task = asyncio.get_running_loop().create_task(self._probe_loop())

    async def wait_idle(self) -> None:
        """Wait for scheduled transition handlers to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        if self._probe_task is not None:
            self._probe_task.cancel()
            try:
                await self._probe_task
            except asyncio.CancelledError:
                pass
            self._probe_task = None
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()
