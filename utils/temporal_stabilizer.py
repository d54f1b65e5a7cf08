"""
Temporal Stabilizer

Hysteresis for one assistive mode (simplified reading) on one surface.

Policy:
    - Manual override "on"/"off" wins and bypasses every timer.
    - auto: a recommendation must persist for activation_delay before the
      mode turns on; a shorter spike cancels the pending activation.
    - Once on, the mode stays on for at least min_hold from the enable time,
      then deactivation_delay more after the recommendation stops.
    - A recommendation that resumes while deactivation is pending cancels it.

Timers are asyncio TimerHandles on the loop passed in; every method must be
called on that loop's thread.
"""

import asyncio
import logging
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

OVERRIDE_AUTO = "auto"
OVERRIDE_ON = "on"
OVERRIDE_OFF = "off"
VALID_OVERRIDES = (OVERRIDE_AUTO, OVERRIDE_ON, OVERRIDE_OFF)


class TemporalStabilizer:
    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        activation_delay: float = 4.0,
        min_hold: float = 60.0,
        deactivation_delay: float = 6.0,
    ):
        self._loop = loop
        self.activation_delay = float(activation_delay)
        self.min_hold = float(min_hold)
        self.deactivation_delay = float(deactivation_delay)

        self.enabled = False
        self.last_enabled_at: Optional[float] = None
        self.override = OVERRIDE_AUTO
        self._activation_timer: Optional[asyncio.TimerHandle] = None
        self._deactivation_timer: Optional[asyncio.TimerHandle] = None
        self._listeners: List[Callable[[bool], None]] = []

    @property
    def activation_pending(self) -> bool:
        return self._activation_timer is not None

    @property
    def deactivation_pending(self) -> bool:
        return self._deactivation_timer is not None

    def is_enabled(self) -> bool:
        """Effective state: the override if set, else the held automatic state."""
        if self.override == OVERRIDE_ON:
            return True
        if self.override == OVERRIDE_OFF:
            return False
        return self.enabled

    def add_listener(self, callback: Callable[[bool], None]) -> None:
        self._listeners.append(callback)

    def update(self, recommended: bool) -> bool:
        """Feed this cycle's recommendation; returns the effective state."""
        if self.override != OVERRIDE_AUTO:
            return self.is_enabled()

        if recommended:
            self._cancel_deactivation()
            if not self.enabled and self._activation_timer is None:
                self._activation_timer = self._loop.call_later(self.activation_delay, self._activate)
        else:
            self._cancel_activation()
            if self.enabled and self._deactivation_timer is None:
                since = self._loop.time() - (self.last_enabled_at or self._loop.time())
                remaining_hold = max(0.0, self.min_hold - since)
                self._deactivation_timer = self._loop.call_later(
                    remaining_hold + self.deactivation_delay, self._deactivate
                )
        return self.is_enabled()

    def set_override(self, mode: str) -> None:
        """
        Set the manual override. "on"/"off" clear pending timers; "auto" resumes
        hysteresis from the current held state.

        Raises:
            ValueError: Unknown mode
        """
        m = (mode or "").strip().lower()
        if m not in VALID_OVERRIDES:
            raise ValueError("mode must be 'auto', 'on', or 'off'")
        before = self.is_enabled()
        self.override = m
        if m != OVERRIDE_AUTO:
            self._clear_timers()
        self._notify_if_changed(before)

    def dispose(self) -> None:
        """Clear all timers (surface unmount / emotion-source teardown)."""
        self._clear_timers()
        self._listeners.clear()

    def _activate(self) -> None:
        self._activation_timer = None
        before = self.is_enabled()
        self.enabled = True
        self.last_enabled_at = self._loop.time()
        logger.debug("Assistive mode enabled at %.1f", self.last_enabled_at)
        self._notify_if_changed(before)

    def _deactivate(self) -> None:
        self._deactivation_timer = None
        before = self.is_enabled()
        self.enabled = False
        logger.debug("Assistive mode disabled at %.1f", self._loop.time())
        self._notify_if_changed(before)

    def _cancel_activation(self) -> None:
        if self._activation_timer is not None:
            self._activation_timer.cancel()
            self._activation_timer = None

    def _cancel_deactivation(self) -> None:
        if self._deactivation_timer is not None:
            self._deactivation_timer.cancel()
            self._deactivation_timer = None

    def _clear_timers(self) -> None:
        self._cancel_activation()
        self._cancel_deactivation()

    def _notify_if_changed(self, before: bool) -> None:
        after = self.is_enabled()
        if after == before:
            return
        for callback in list(self._listeners):
            try:
                callback(after)
            except Exception as e:
                logger.warning("Stabilizer listener failed: %s", e)

    def to_dict(self) -> dict:
        return {
            "enabled": self.is_enabled(),
            "heldEnabled": self.enabled,
            "override": self.override,
            "lastEnabledAt": self.last_enabled_at,
            "activationPending": self.activation_pending,
            "deactivationPending": self.deactivation_pending,
        }
