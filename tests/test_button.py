"""Tests for the download button state machine."""

import pytest

from subtap.button import ABSENT, DISABLED, ButtonEvent, ButtonStatus, UiState, accepts_clicks, transition


def run(status: ButtonStatus, *events: ButtonEvent) -> ButtonStatus:
    for event in events:
        status = transition(status, event)
    return status


class TestTransitions:
    def test_happy_path(self):
        status = run(DISABLED, ButtonEvent.agent_ready, ButtonEvent.click)
        assert status.state is UiState.loading

        status = transition(status, ButtonEvent.succeeded, "Subtitles downloaded successfully!")
        assert status == ButtonStatus(UiState.success, "Subtitles downloaded successfully!")

        assert transition(status, ButtonEvent.revert) == ButtonStatus(UiState.ready)

    def test_error_reverts_to_ready(self):
        status = run(DISABLED, ButtonEvent.agent_ready, ButtonEvent.click)
        status = transition(status, ButtonEvent.failed, "No subtitles")

        assert status == ButtonStatus(UiState.error, "No subtitles")
        assert transition(status, ButtonEvent.revert).state is UiState.ready

    def test_duplicate_ready_is_a_no_op(self):
        ready = transition(DISABLED, ButtonEvent.agent_ready)
        assert transition(ready, ButtonEvent.agent_ready) == ready

    def test_click_while_loading_is_ignored(self):
        loading = run(DISABLED, ButtonEvent.agent_ready, ButtonEvent.click)
        assert transition(loading, ButtonEvent.click) == loading

    @pytest.mark.parametrize("event", list(ButtonEvent))
    def test_absent_ignores_everything(self, event):
        assert transition(ABSENT, event) == ABSENT

    def test_disabled_ignores_clicks(self):
        assert transition(DISABLED, ButtonEvent.click) == DISABLED

    def test_message_only_kept_for_terminal_states(self):
        assert transition(DISABLED, ButtonEvent.agent_ready, "ignored").message is None


class TestAcceptsClicks:
    @pytest.mark.parametrize(
        "state,expected",
        [
            (UiState.absent, False),
            (UiState.disabled, False),
            (UiState.ready, True),
            (UiState.loading, False),
            (UiState.success, False),
            (UiState.error, False),
        ],
    )
    def test_only_ready_accepts_clicks(self, state, expected):
        assert accepts_clicks(ButtonStatus(state)) is expected
