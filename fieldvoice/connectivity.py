"""
FIELDVOICE Connectivity Monitor
Online/offline signal for the mode controller.

Connectivity comes from either a periodic HTTP probe or the host
application pushing the state with ``set_online``. Subscribers only hear
about changes.

Usage:
    monitor = ConnectivityMonitor(probe_url="https://example.com/generate_204")
    monitor.subscribe(mode_controller.set_connectivity)
    monitor.start()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional

import aiohttp

logger = logging.getLogger("FIELDVOICE.Connectivity")


__all__ = ["ConnectivityMonitor"]


class ConnectivityMonitor:
    """Publishes online/offline changes from probing or manual updates."""

    def __init__(
        self,
        probe_url: Optional[str] = None,
        poll_interval_sec: float = 15.0,
        timeout_sec: float = 3.0,
        initial: bool = True,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.probe_url = probe_url
        self.poll_interval_sec = poll_interval_sec
        self.timeout_sec = timeout_sec
        self._online = initial
        self._session = session
        self._owns_session = session is None
        self._listeners: List[Callable[[bool], object]] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def online(self) -> bool:
        return self._online

    def subscribe(self, listener: Callable[[bool], object]) -> None:
        self._listeners.append(listener)

    def set_online(self, online: bool) -> bool:
        """Record connectivity; returns True when this was a change."""
        if online == self._online:
            return False
        self._online = online
        logger.info(f"Network {'online' if online else 'offline'}")
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception as e:
                logger.warning(f"Connectivity listener error: {e}")
        return True

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def probe(self) -> bool:
        """One HEAD request against the probe URL."""
        if not self.probe_url:
            return self._online
        try:
            session = await self._get_session()
            async with session.head(
                self.probe_url,
                timeout=aiohttp.ClientTimeout(total=self.timeout_sec),
                allow_redirects=True,
            ) as response:
                return response.status < 500
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Connectivity probe failed: {e}")
            return False

    async def check(self) -> bool:
        online = await self.probe()
        self.set_online(online)
        return online

    async def _poll_loop(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self.poll_interval_sec)

    def start(self) -> None:
        if not self.probe_url:
            logger.info("No probe URL, connectivity is set manually")
            return
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
