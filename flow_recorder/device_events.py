"""
Device Event Interpreter — raw ``getevent -lt`` lines to gestures.

Tracks the multitouch pointer as axis reports arrive and classifies each
completed touch when the finger lifts:

    displacement beyond the swipe threshold on either axis -> swipe
    held longer than the long-press threshold               -> long press
    otherwise                                               -> tap

Back and home key presses are reported immediately, independent of the touch
state.  Classification near the thresholds is a heuristic, not a contract.

Usage:
    interpreter = DeviceEventInterpreter(screen_width=1080, screen_height=2400)
    for line in lines:
        action = interpreter.feed(line)
        if action:
            ...
"""

from __future__ import annotations

import logging
import re
import time
from typing import Callable, Optional, Tuple

from flow_recorder.actions import (
    BackAction,
    HomeAction,
    LongPressAction,
    RecordedAction,
    SwipeAction,
    TapAction,
)
from flow_recorder.config import (
    DEFAULT_SCREEN_SIZE,
    LONG_PRESS_THRESHOLD_MS,
    RAW_AXIS_MAX,
    SWIPE_THRESHOLD_PX,
)

logger = logging.getLogger("device_events")

# [   76012.115324] /dev/input/event1: EV_ABS       ABS_MT_POSITION_X    00003a8c
_EVENT_RE = re.compile(
    r"^\s*(?:\[\s*(?P<ts>\d+(?:\.\d+)?)\s*\])?\s*"
    r"(?:\S+:)?\s*"
    r"(?P<type>EV_[A-Z]+)\s+(?P<code>[A-Z0-9_]+)\s+(?P<value>\S+)"
)

_TRACKING_RELEASED = 0xFFFFFFFF
_HOME_KEYS = ("KEY_HOME", "KEY_HOMEPAGE")


def _parse_value(value: str) -> Optional[int]:
    try:
        return int(value, 16)
    except ValueError:
        return None


class DeviceEventInterpreter:
    """Stateful gesture classifier fed one event line at a time."""

    def __init__(
        self,
        screen_width: int = DEFAULT_SCREEN_SIZE[0],
        screen_height: int = DEFAULT_SCREEN_SIZE[1],
        swipe_threshold_px: int = SWIPE_THRESHOLD_PX,
        long_press_threshold_ms: int = LONG_PRESS_THRESHOLD_MS,
        axis_max: Optional[int] = RAW_AXIS_MAX,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.screen_width = screen_width
        self.screen_height = screen_height
        self.swipe_threshold_px = swipe_threshold_px
        self.long_press_threshold_ms = long_press_threshold_ms
        self.axis_max = axis_max
        self._clock = clock
        self.reset()

    def reset(self) -> None:
        self._x = 0
        self._y = 0
        self._touching = False
        self._awaiting_start = False
        self._start: Optional[Tuple[int, int]] = None
        self._start_time = 0.0

    # ------------------------------------------------------------------

    def _scale(self, raw: int, extent: int) -> int:
        if not self.axis_max:
            return raw
        return int(round(raw / self.axis_max * extent))

    def feed(self, line: str) -> Optional[RecordedAction]:
        """Consume one event line; return a gesture when one completes."""
        match = _EVENT_RE.match(line)
        if not match:
            return None

        stamp = float(match.group("ts")) if match.group("ts") else self._clock()
        event_type, code, value = match.group("type", "code", "value")

        if event_type == "EV_ABS":
            raw = _parse_value(value)
            if raw is None:
                return None
            if code == "ABS_MT_POSITION_X":
                self._x = self._scale(raw, self.screen_width)
            elif code == "ABS_MT_POSITION_Y":
                self._y = self._scale(raw, self.screen_height)
            elif code == "ABS_MT_TRACKING_ID":
                if raw == _TRACKING_RELEASED:
                    return self._touch_up(stamp)
                self._touch_down(stamp)
            return None

        if event_type == "EV_SYN":
            if code == "SYN_REPORT" and self._awaiting_start:
                self._start = (self._x, self._y)
                self._awaiting_start = False
            return None

        if event_type == "EV_KEY":
            if code == "BTN_TOUCH":
                if value == "DOWN":
                    self._touch_down(stamp)
                elif value == "UP":
                    return self._touch_up(stamp)
            elif code == "KEY_BACK" and value == "DOWN":
                return BackAction()
            elif code in _HOME_KEYS and value == "DOWN":
                return HomeAction()
        return None

    # ------------------------------------------------------------------

    def _touch_down(self, stamp: float) -> None:
        if self._touching:
            return
        self._touching = True
        self._awaiting_start = True
        self._start = None
        self._start_time = stamp

    def _touch_up(self, stamp: float) -> Optional[RecordedAction]:
        if not self._touching:
            return None
        self._touching = False
        self._awaiting_start = False

        start_x, start_y = self._start or (self._x, self._y)
        end_x, end_y = self._x, self._y
        elapsed_ms = max(0, int(round((stamp - self._start_time) * 1000)))
        dx, dy = end_x - start_x, end_y - start_y

        if abs(dx) > self.swipe_threshold_px or abs(dy) > self.swipe_threshold_px:
            action: RecordedAction = SwipeAction(
                x=start_x, y=start_y, end_x=end_x, end_y=end_y,
                duration_ms=elapsed_ms,
            )
        elif elapsed_ms > self.long_press_threshold_ms:
            action = LongPressAction(x=start_x, y=start_y, duration_ms=elapsed_ms)
        else:
            action = TapAction(x=start_x, y=start_y)

        logger.debug("Touch classified as %s (%dms, dx=%d, dy=%d)",
                     action.action_type.value, elapsed_ms, dx, dy)
        return action
