"""
Flow Synthesizer — Maestro YAML generation and parsing.

Two directions over the same closed set of action variants:

    generate_flow_yaml  — recorded actions -> Maestro flow text, one block
                          (``# description`` comment + one command) per action
    parse_flow_yaml     — Maestro flow text (ours or written by
                          ``maestro record``) -> recorded actions, by scanning
                          command prefixes and their indented parameters

Generation and parsing are inverses for every action the generator emits.

Usage:
    from flow_recorder.flow_synthesizer import generate_flow_yaml, parse_flow_yaml

    text = generate_flow_yaml(session.actions, app_id="com.example.app", name="Login")
    parsed = parse_flow_yaml(text)
    parsed.app_id, parsed.actions
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import yaml

from flow_recorder.actions import (
    ActionType,
    AssertAction,
    InputAction,
    LaunchAction,
    LongPressAction,
    RecordedAction,
    ScrollAction,
    SwipeAction,
    TapAction,
    WaitAction,
    make_action,
)

logger = logging.getLogger("flow_synthesizer")

APP_ID_PLACEHOLDER = "<your.app.id>"
INDENT = "    "

_VERB_RE = re.compile(r"^-\s+([A-Za-z]+)\s*(?::\s*(.*))?$")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _quote(value: Any) -> str:
    # JSON strings are valid YAML double-quoted scalars.
    return json.dumps(str(value), ensure_ascii=False)


def _clean_value(raw: str) -> str:
    value = raw.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        try:
            return json.loads(value)
        except ValueError:
            return value[1:-1]
    if len(value) >= 2 and value[0] == value[-1] == "'":
        return value[1:-1].replace("''", "'")
    return value


def _point(x: Optional[int], y: Optional[int]) -> str:
    return f'"{x},{y}"'


# ===================================================================
# GENERATE
# ===================================================================

def _render_tap(action: TapAction) -> List[str]:
    if action.text:
        return ["- tapOn:", f"{INDENT}text: {_quote(action.text)}"]
    if action.element_id:
        return ["- tapOn:", f"{INDENT}id: {_quote(action.element_id)}"]
    return ["- tapOn:", f"{INDENT}point: {_point(action.x, action.y)}"]


def _render_swipe(action: SwipeAction) -> List[str]:
    if action.has_coordinates:
        lines = [
            "- swipe:",
            f"{INDENT}start: {_point(action.x, action.y)}",
            f"{INDENT}end: {_point(action.end_x, action.end_y)}",
        ]
        if action.duration_ms:
            lines.append(f"{INDENT}duration: {int(action.duration_ms)}")
        return lines
    return ["- swipe:", f'{INDENT}direction: "{action.direction.upper()}"']


def _render_input(action: InputAction) -> List[str]:
    return [f"- inputText: {_quote(action.text)}"]


def _render_scroll(action: ScrollAction) -> List[str]:
    if action.direction:
        return [
            "- scrollUntilVisible:",
            f'{INDENT}element: ".*"',
            f'{INDENT}direction: "{action.direction.upper()}"',
        ]
    return ["- scroll"]


def _render_long_press(action: LongPressAction) -> List[str]:
    if action.x is not None and action.y is not None:
        return ["- longPressOn:", f"{INDENT}point: {_point(action.x, action.y)}"]
    return ["- longPressOn:", f"{INDENT}text: {_quote(action.text)}"]


def _render_launch(action: LaunchAction) -> List[str]:
    if action.app_id:
        return [f"- launchApp: {_quote(action.app_id)}"]
    return ["- launchApp"]


def _render_assert(action: AssertAction) -> List[str]:
    return ["- assertVisible:", f"{INDENT}text: {_quote(action.text)}"]


def _render_wait(action: WaitAction) -> List[str]:
    return [
        "- extendedWaitUntil:",
        f'{INDENT}visible: ".*"',
        f"{INDENT}timeout: {int(round(action.seconds * 1000))}",
    ]


_RENDERERS: Dict[ActionType, Callable[[Any], List[str]]] = {
    ActionType.TAP: _render_tap,
    ActionType.SWIPE: _render_swipe,
    ActionType.INPUT: _render_input,
    ActionType.SCROLL: _render_scroll,
    ActionType.LONG_PRESS: _render_long_press,
    ActionType.BACK: lambda action: ["- pressKey: back"],
    ActionType.HOME: lambda action: ["- pressKey: home"],
    ActionType.LAUNCH: _render_launch,
    ActionType.PRESS_KEY: lambda action: [f"- pressKey: {action.key}"],
    ActionType.ASSERT: _render_assert,
    ActionType.WAIT: _render_wait,
}


def _first_launch_app_id(actions: Sequence[RecordedAction]) -> Optional[str]:
    for action in actions:
        if isinstance(action, LaunchAction) and action.app_id:
            return action.app_id
    return None


def generate_flow_yaml(
    actions: Sequence[RecordedAction],
    app_id: Optional[str] = None,
    name: str = "",
    recorded_at: Optional[str] = None,
) -> str:
    """Render *actions* as a Maestro flow, one command block per action.

    The app id falls back to the first launch action, then to a placeholder
    the user has to replace before replaying.
    """
    resolved_app_id = app_id or _first_launch_app_id(actions)

    lines = [
        f"# Maestro Flow: {name or 'Recorded flow'}",
        f"# Recorded: {recorded_at or _now_iso()}",
        "",
    ]
    if resolved_app_id:
        lines.append(f"appId: {resolved_app_id}")
    else:
        lines.append("# Replace the placeholder with the id of the app under test")
        lines.append(f"appId: {APP_ID_PLACEHOLDER}")
    lines.extend(["---", ""])

    for action in actions:
        description = " ".join(action.label.splitlines())
        lines.append(f"# {description}")
        lines.extend(_RENDERERS[action.action_type](action))
        lines.append("")

    return "\n".join(lines)


# ===================================================================
# PARSE
# ===================================================================

@dataclass
class ParsedFlow:
    """Result of scanning a flow file."""

    app_id: Optional[str] = None
    actions: List[RecordedAction] = field(default_factory=list)


@dataclass
class _Block:
    verb: str
    inline: Optional[str] = None
    params: Dict[str, str] = field(default_factory=dict)
    description: str = ""


def _parse_point(
    value: Optional[str],
    screen_size: Optional[Tuple[int, int]] = None,
) -> Optional[Tuple[int, int]]:
    """Parse ``"x,y"``; percentages need *screen_size* to become pixels."""
    if not value:
        return None
    parts = [p.strip() for p in value.split(",")]
    if len(parts) != 2:
        return None
    extents = screen_size or (None, None)
    coords: List[int] = []
    for part, extent in zip(parts, extents):
        try:
            if part.endswith("%"):
                if extent is None:
                    return None
                coords.append(int(round(extent * float(part[:-1]) / 100)))
            else:
                coords.append(int(float(part)))
        except ValueError:
            return None
    return coords[0], coords[1]


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(float(value))
    except ValueError:
        return None


def _build_action(
    block: _Block,
    screen_size: Optional[Tuple[int, int]],
) -> Optional[RecordedAction]:
    verb, inline, params = block.verb, block.inline, block.params
    values: Dict[str, Any] = {"description": block.description}

    if verb in ("tapOn", "longPressOn"):
        action_type = ActionType.TAP if verb == "tapOn" else ActionType.LONG_PRESS
        point = _parse_point(params.get("point"), screen_size)
        if point:
            values["x"], values["y"] = point
        values["text"] = inline or params.get("text")
        if verb == "tapOn":
            values["element_id"] = params.get("id")
    elif verb == "swipe":
        action_type = ActionType.SWIPE
        start = _parse_point(params.get("start"), screen_size)
        end = _parse_point(params.get("end"), screen_size)
        if start and end:
            values["x"], values["y"] = start
            values["end_x"], values["end_y"] = end
        values["direction"] = params.get("direction")
        values["duration_ms"] = _parse_int(params.get("duration"))
    elif verb == "inputText":
        action_type = ActionType.INPUT
        values["text"] = inline if inline is not None else params.get("text")
    elif verb in ("scroll", "scrollUntilVisible"):
        action_type = ActionType.SCROLL
        values["direction"] = params.get("direction")
    elif verb == "back":
        action_type = ActionType.BACK
    elif verb == "pressKey":
        key = inline or params.get("key") or ""
        if key.lower() == "back":
            action_type = ActionType.BACK
        elif key.lower() == "home":
            action_type = ActionType.HOME
        else:
            action_type = ActionType.PRESS_KEY
            values["key"] = key
    elif verb == "launchApp":
        action_type = ActionType.LAUNCH
        values["app_id"] = inline or params.get("appId")
    elif verb == "assertVisible":
        action_type = ActionType.ASSERT
        values["text"] = inline or params.get("text")
    elif verb == "extendedWaitUntil":
        timeout = _parse_int(params.get("timeout"))
        if timeout is None:
            return None
        action_type = ActionType.WAIT
        values["seconds"] = timeout / 1000
    else:
        return None

    try:
        return make_action(action_type, **values)
    except ValueError as exc:
        logger.debug("Skipping incomplete %s block: %s", verb, exc)
        return None


def parse_flow_yaml(
    text: str,
    screen_size: Optional[Tuple[int, int]] = None,
) -> ParsedFlow:
    """Reconstruct recorded actions from Maestro flow text.

    Each ``- command`` line closes the previous block; indented ``key: value``
    lines fill the open one.  A block becomes an action only once it is
    closed with its required fields present.  Unknown commands and stray
    lines are ignored.
    """
    parsed = ParsedFlow()
    block: Optional[_Block] = None
    comment = ""

    def close_block() -> None:
        nonlocal block
        if block is not None:
            action = _build_action(block, screen_size)
            if action is not None:
                parsed.actions.append(action)
            block = None

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line == "---":
            comment = ""
            continue
        if line.startswith("#"):
            comment = line.lstrip("#").strip()
            continue

        match = _VERB_RE.match(line)
        if match:
            close_block()
            inline = match.group(2)
            block = _Block(
                verb=match.group(1),
                inline=_clean_value(inline) if inline else None,
                description=comment,
            )
            comment = ""
            continue

        indented = raw_line[:1] in (" ", "\t")
        if not indented:
            close_block()
            comment = ""
            if line.startswith("appId:"):
                value = _clean_value(line[len("appId:"):])
                if value and value != APP_ID_PLACEHOLDER:
                    parsed.app_id = value
            continue

        if block is not None and ":" in line:
            key, _, value = line.partition(":")
            block.params[key.strip()] = _clean_value(value)

    close_block()

    now = _now_iso()
    parsed.actions = [
        action.with_capture(f"action_{index:03d}", now)
        for index, action in enumerate(parsed.actions, start=1)
    ]
    return parsed


def validate_flow_yaml(text: str) -> Optional[str]:
    """Return a YAML syntax error message, or None when *text* loads."""
    try:
        list(yaml.safe_load_all(text))
    except yaml.YAMLError as exc:
        return str(exc)
    return None
