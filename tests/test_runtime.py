"""Tests for the runtime wiring in subtap/runtime.py."""

import asyncio

import pytest
import pytest_asyncio

from subtap.button import UiState
from subtap.runtime import create_runtime

from tests.support import OTHER_VIDEO_ID, OTHER_WATCH_URL, VIDEO_ID, WATCH_URL, player_response


@pytest_asyncio.fixture
async def runtime(fast_settings, network):
    rt = create_runtime(fast_settings.model_copy(update={"settle_delay": 0.05}), client=network.client())
    await rt.start()
    yield rt
    await rt.aclose()


class TestRuntimeNavigation:
    @pytest.mark.asyncio
    async def test_navigate_captures_player_request(self, runtime):
        await runtime.navigate(WATCH_URL, player_response())

        assert runtime.controller.session.ui_state is UiState.ready
        assert runtime.cache.lookup(VIDEO_ID, "en") is not None

    @pytest.mark.asyncio
    async def test_overlapping_navigations(self, runtime):
        first = asyncio.create_task(runtime.navigate(WATCH_URL, player_response()))
        await asyncio.sleep(0.01)
        second = asyncio.create_task(
            runtime.navigate(OTHER_WATCH_URL, player_response(video_id=OTHER_VIDEO_ID))
        )

        assert await asyncio.gather(first, second, return_exceptions=True) == [None, None]
        assert runtime.controller.session.video_id == OTHER_VIDEO_ID
        assert runtime.controller.session.ui_state is UiState.ready
