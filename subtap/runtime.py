"""
Wiring of one host page with its agent, cache and session controller.

The service builds a single Runtime at startup. Tests build their own with a
mocked transport and fast timings.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from subtap.agent import InterceptionAgent
from subtap.cache import CaptureCache
from subtap.collaborators import DirectorySaver, HttpTrackFetcher, SettingsPreferences
from subtap.config import Settings
from subtap.page import HostPage, YtDlpPageLoader
from subtap.session import SessionController

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    page: HostPage
    agent: InterceptionAgent
    cache: CaptureCache
    controller: SessionController
    fetcher: HttpTrackFetcher
    saver: DirectorySaver
    loader: YtDlpPageLoader
    _player_tasks: set[asyncio.Task] = field(default_factory=set)

    async def start(self) -> None:
        """Inject the agent, then attach the controller. Needs a running loop."""
        self.agent.install()
        self.controller.start()

    async def navigate(self, url: str, player_response: dict[str, Any] | None = None, settle: bool = True) -> None:
        """
        Move the page to ``url`` the way the host application would.

        When caption autoloading is on, the page requests the preferred track
        through its own (patched) fetch while the controller settles, which is
        what feeds the capture cache in normal operation.

        Args:
            url: New location
            player_response: Embedded player metadata for the new video
            settle: Wait for the decision gate and the player's caption request
        """
        self.page.navigate(url, player_response)

        if self.settings.player_autoload_captions and player_response:
            task = asyncio.get_running_loop().create_task(
                self.page.load_captions(self.settings.preferred_language)
            )
            self._player_tasks.add(task)
            task.add_done_callback(self._player_tasks.discard)

        if settle:
            await self.controller.settled()
            if self._player_tasks:
                for result in await asyncio.gather(*self._player_tasks, return_exceptions=True):
                    if isinstance(result, Exception):
                        logger.warning(f"Player caption request raised: {result}")
            # Let queued channel deliveries run
            await asyncio.sleep(0)

    async def aclose(self) -> None:
        self.controller.stop()
        self.agent.cancel_timers()
        for task in list(self._player_tasks):
            task.cancel()
        await self.fetcher.aclose()
        await self.page.aclose()
        logger.info("Runtime closed")


def create_runtime(config: Settings, client: httpx.AsyncClient | None = None) -> Runtime:
    """
    Build a runtime from settings.

    Args:
        config: Settings to use
        client: HTTP client shared by the page and the direct fetcher
            (a new client each when omitted)
    """
    page = HostPage(client=client)
    cache = CaptureCache(ttl=config.cache_ttl)
    fetcher = HttpTrackFetcher(config, client=client)
    saver = DirectorySaver(config.download_dir)
    controller = SessionController(
        page,
        cache,
        downloader=saver,
        preferences=SettingsPreferences(config),
        fetcher=fetcher,
        settings=config,
    )
    return Runtime(
        settings=config,
        page=page,
        agent=InterceptionAgent(page, config),
        cache=cache,
        controller=controller,
        fetcher=fetcher,
        saver=saver,
        loader=YtDlpPageLoader(timeout=config.request_timeout),
    )
