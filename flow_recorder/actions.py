"""
Recorded action model.

One frozen dataclass per action type, all sharing the capture metadata
(``id``, ``timestamp``, ``description``, ``screenshot_path``).  Each variant
carries only the fields relevant to it and refuses construction without the
fields a Maestro command needs, so flow generation never meets a half-built
action.

Usage:
    from flow_recorder.actions import TapAction, action_from_dict, make_action

    tap = TapAction(x=540, y=1200)
    again = action_from_dict(tap.to_dict())
    typed = make_action("input", text="hello")
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Type


class ActionType(str, Enum):
    TAP = "tap"
    SWIPE = "swipe"
    INPUT = "input"
    SCROLL = "scroll"
    LONG_PRESS = "longPress"
    BACK = "back"
    HOME = "home"
    LAUNCH = "launch"
    PRESS_KEY = "pressKey"
    ASSERT = "assert"
    WAIT = "wait"


# Action types that get a contemporaneous screenshot when recorded locally.
SCREENSHOT_ACTION_TYPES: FrozenSet[ActionType] = frozenset({
    ActionType.TAP,
    ActionType.SWIPE,
    ActionType.SCROLL,
    ActionType.LONG_PRESS,
    ActionType.BACK,
    ActionType.HOME,
    ActionType.ASSERT,
    ActionType.WAIT,
})

DEFAULT_WAIT_SECONDS = 3.0

# pressKey names that Maestro flows write for BackAction / HomeAction.
_DEDICATED_KEYS: Dict[str, ActionType] = {
    "back": ActionType.BACK,
    "home": ActionType.HOME,
}


def _normalize_direction(action: RecordedAction) -> None:
    direction = getattr(action, "direction", None)
    if direction:
        object.__setattr__(action, "direction", direction.strip().lower())


def _has_point(x: Optional[int], y: Optional[int]) -> bool:
    return x is not None and y is not None


# ===================================================================
# Base
# ===================================================================

@dataclass(frozen=True)
class RecordedAction:
    """Capture metadata shared by every action variant."""

    id: str = ""
    timestamp: str = ""
    description: str = ""
    screenshot_path: Optional[str] = None

    action_type = ActionType.TAP

    def __post_init__(self) -> None:
        _normalize_direction(self)
        self.validate()

    def validate(self) -> None:
        """Raise ValueError when a required field is missing."""

    def describe(self) -> str:
        return self.action_type.value

    @property
    def label(self) -> str:
        return self.description or self.describe()

    def with_capture(
        self,
        action_id: str,
        timestamp: str,
        screenshot_path: Optional[str] = None,
    ) -> RecordedAction:
        """Return a copy stamped with recording metadata."""
        return replace(
            self,
            id=action_id,
            timestamp=timestamp,
            screenshot_path=screenshot_path,
            description=self.label,
        )

    def typed_fields(self) -> Dict[str, Any]:
        """Fields specific to the variant (everything but capture metadata)."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in _BASE_FIELDS
        }

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["type"] = self.action_type.value
        return d


_BASE_FIELDS = frozenset({"id", "timestamp", "description", "screenshot_path"})


# ===================================================================
# Variants
# ===================================================================

@dataclass(frozen=True)
class TapAction(RecordedAction):
    x: Optional[int] = None
    y: Optional[int] = None
    text: Optional[str] = None
    element_id: Optional[str] = None

    action_type = ActionType.TAP

    def validate(self) -> None:
        if not (self.text or self.element_id or _has_point(self.x, self.y)):
            raise ValueError("tap needs text, an element id or a point")

    def describe(self) -> str:
        if self.text:
            return f'Tap on "{self.text}"'
        if self.element_id:
            return f"Tap on #{self.element_id}"
        return f"Tap at ({self.x}, {self.y})"


@dataclass(frozen=True)
class SwipeAction(RecordedAction):
    x: Optional[int] = None
    y: Optional[int] = None
    end_x: Optional[int] = None
    end_y: Optional[int] = None
    duration_ms: Optional[int] = None
    direction: Optional[str] = None

    action_type = ActionType.SWIPE

    @property
    def has_coordinates(self) -> bool:
        return _has_point(self.x, self.y) and _has_point(self.end_x, self.end_y)

    def validate(self) -> None:
        if not (self.has_coordinates or self.direction):
            raise ValueError("swipe needs start and end points or a direction")
        # Points win; a flow swipe carries either points or a direction.
        if self.has_coordinates and self.direction:
            object.__setattr__(self, "direction", None)

    def describe(self) -> str:
        if self.has_coordinates:
            return f"Swipe from ({self.x}, {self.y}) to ({self.end_x}, {self.end_y})"
        return f"Swipe {self.direction}"


@dataclass(frozen=True)
class InputAction(RecordedAction):
    text: Optional[str] = None

    action_type = ActionType.INPUT

    def validate(self) -> None:
        if self.text is None:
            raise ValueError("input needs text")

    def describe(self) -> str:
        return f'Type "{self.text}"'


@dataclass(frozen=True)
class ScrollAction(RecordedAction):
    direction: Optional[str] = None

    action_type = ActionType.SCROLL

    def describe(self) -> str:
        return f"Scroll {self.direction}" if self.direction else "Scroll"


@dataclass(frozen=True)
class LongPressAction(RecordedAction):
    x: Optional[int] = None
    y: Optional[int] = None
    text: Optional[str] = None
    duration_ms: Optional[int] = None

    action_type = ActionType.LONG_PRESS

    def validate(self) -> None:
        if not (self.text or _has_point(self.x, self.y)):
            raise ValueError("long press needs text or a point")

    def describe(self) -> str:
        if _has_point(self.x, self.y):
            return f"Long press at ({self.x}, {self.y})"
        return f'Long press on "{self.text}"'


@dataclass(frozen=True)
class BackAction(RecordedAction):
    action_type = ActionType.BACK

    def describe(self) -> str:
        return "Press back"


@dataclass(frozen=True)
class HomeAction(RecordedAction):
    action_type = ActionType.HOME

    def describe(self) -> str:
        return "Press home"


@dataclass(frozen=True)
class LaunchAction(RecordedAction):
    app_id: Optional[str] = None

    action_type = ActionType.LAUNCH

    def describe(self) -> str:
        return f"Launch {self.app_id}" if self.app_id else "Launch app"


@dataclass(frozen=True)
class PressKeyAction(RecordedAction):
    key: str = ""

    action_type = ActionType.PRESS_KEY

    def validate(self) -> None:
        if not self.key:
            raise ValueError("press key needs a key name")
        if self.key.strip().lower() in _DEDICATED_KEYS:
            raise ValueError(
                f"{self.key!r} has its own action type; use make_action('pressKey', ...)"
            )

    def describe(self) -> str:
        return f"Press {self.key}"


@dataclass(frozen=True)
class AssertAction(RecordedAction):
    text: Optional[str] = None

    action_type = ActionType.ASSERT

    def validate(self) -> None:
        if not self.text:
            raise ValueError("assert needs text")

    def describe(self) -> str:
        return f'Assert "{self.text}" is visible'


@dataclass(frozen=True)
class WaitAction(RecordedAction):
    seconds: float = DEFAULT_WAIT_SECONDS

    action_type = ActionType.WAIT

    def validate(self) -> None:
        if not self.seconds or self.seconds <= 0:
            object.__setattr__(self, "seconds", DEFAULT_WAIT_SECONDS)

    def describe(self) -> str:
        return f"Wait {self.seconds:g}s"


ACTION_CLASSES: Dict[ActionType, Type[RecordedAction]] = {
    cls.action_type: cls
    for cls in (
        TapAction,
        SwipeAction,
        InputAction,
        ScrollAction,
        LongPressAction,
        BackAction,
        HomeAction,
        LaunchAction,
        PressKeyAction,
        AssertAction,
        WaitAction,
    )
}


# ===================================================================
# Construction helpers
# ===================================================================

def _dedicated_key_class(
    cls: Type[RecordedAction],
    values: Dict[str, Any],
) -> Type[RecordedAction]:
    """Map ``pressKey`` back/home to BackAction/HomeAction, dropping ``key``."""
    if cls is not PressKeyAction:
        return cls
    key = values.get("key")
    if not isinstance(key, str):
        return cls
    action_type = _DEDICATED_KEYS.get(key.strip().lower())
    if action_type is None:
        return cls
    values.pop("key")
    return ACTION_CLASSES[action_type]


def make_action(action_type: Any, **values: Any) -> RecordedAction:
    """Build the variant for *action_type* from keyword fields.

    ``None`` values are dropped; unknown field names raise ValueError.
    ``pressKey`` with a back or home key yields a BackAction / HomeAction.
    """
    try:
        cls = ACTION_CLASSES[ActionType(action_type)]
    except ValueError:
        raise ValueError(f"Unknown action type: {action_type!r}") from None

    valid = {f.name for f in fields(cls)}
    unknown = sorted(k for k in values if k not in valid)
    if unknown:
        raise ValueError(
            f"Unexpected field(s) for {cls.action_type.value}: {', '.join(unknown)}"
        )
    values = {k: v for k, v in values.items() if v is not None}
    cls = _dedicated_key_class(cls, values)
    return cls(**values)


def action_from_dict(data: Dict[str, Any]) -> RecordedAction:
    """Rebuild an action from its ``to_dict()`` form, ignoring unknown keys."""
    data = dict(data)
    raw_type = data.pop("type", None)
    try:
        cls = ACTION_CLASSES[ActionType(raw_type)]
    except ValueError:
        raise ValueError(f"Unknown action type: {raw_type!r}") from None
    valid = {f.name for f in fields(cls)}
    values = {k: v for k, v in data.items() if k in valid}
    cls = _dedicated_key_class(cls, values)
    return cls(**values)
