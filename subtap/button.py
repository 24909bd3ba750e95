"""
Download button state machine.

The transition function is pure: rendering and timers live in the session
controller, so every transition can be tested without a UI.
"""

from dataclasses import dataclass
from enum import Enum


class UiState(str, Enum):
    """Lifecycle of the user-facing download action."""

    absent = "absent"
    disabled = "disabled"
    ready = "ready"
    loading = "loading"
    success = "success"
    error = "error"


class ButtonEvent(str, Enum):
    agent_ready = "agent_ready"
    click = "click"
    succeeded = "succeeded"
    failed = "failed"
    revert = "revert"


@dataclass(frozen=True)
class ButtonStatus:
    state: UiState
    message: str | None = None


_TRANSITIONS: dict[tuple[UiState, ButtonEvent], UiState] = {
    (UiState.disabled, ButtonEvent.agent_ready): UiState.ready,
    (UiState.ready, ButtonEvent.click): UiState.loading,
    (UiState.loading, ButtonEvent.succeeded): UiState.success,
    (UiState.loading, ButtonEvent.failed): UiState.error,
    (UiState.success, ButtonEvent.revert): UiState.ready,
    (UiState.error, ButtonEvent.revert): UiState.ready,
}

ABSENT = ButtonStatus(UiState.absent)
DISABLED = ButtonStatus(UiState.disabled)


def transition(status: ButtonStatus, event: ButtonEvent, message: str | None = None) -> ButtonStatus:
    """
    Apply an event to a button status.

    Events that are not legal in the current state leave it unchanged: a
    click while loading is ignored, and a duplicate readiness signal on a
    ready button is a no-op. ``message`` is kept only for terminal states.
    """
    target = _TRANSITIONS.get((status.state, event))
    if target is None:
        return status
    if target in (UiState.success, UiState.error):
        return ButtonStatus(target, message)
    return ButtonStatus(target)


def accepts_clicks(status: ButtonStatus) -> bool:
    return status.state is UiState.ready
