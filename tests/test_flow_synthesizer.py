"""Test flow_synthesizer — Maestro flow generation and parsing."""
from __future__ import annotations

import pytest
import yaml

try:
    from flow_recorder.actions import (
        AssertAction,
        BackAction,
        HomeAction,
        InputAction,
        LaunchAction,
        LongPressAction,
        PressKeyAction,
        ScrollAction,
        SwipeAction,
        TapAction,
        WaitAction,
        make_action,
    )
    from flow_recorder.flow_synthesizer import (
        APP_ID_PLACEHOLDER,
        _parse_point,
        generate_flow_yaml,
        parse_flow_yaml,
        validate_flow_yaml,
    )
    HAS_MODULE = True
except ImportError:
    HAS_MODULE = False

pytestmark = pytest.mark.skipif(not HAS_MODULE, reason="flow_synthesizer not available")


def _command_lines(text):
    return [line for line in text.splitlines() if line.startswith("- ")]


ROUND_TRIP_CASES = [
    TapAction(text='Sign "in"'),
    TapAction(element_id="login_button"),
    TapAction(x=540, y=1200),
    SwipeAction(x=100, y=1500, end_x=100, end_y=300, duration_ms=400),
    SwipeAction(direction="left"),
    InputAction(text="hello: world"),
    ScrollAction(),
    ScrollAction(direction="down"),
    ScrollAction(direction="up"),
    LongPressAction(x=300, y=400),
    LongPressAction(text="Photo"),
    BackAction(),
    HomeAction(),
    LaunchAction(app_id="com.example.app"),
    LaunchAction(),
    PressKeyAction(key="Enter"),
    make_action("pressKey", key="back"),
    make_action("pressKey", key="Home"),
    SwipeAction(x=1, y=2, end_x=300, end_y=400, direction="up"),
    AssertAction(text="Welcome"),
    WaitAction(seconds=2),
    WaitAction(seconds=1.5),
]


# ===================================================================
# Generation
# ===================================================================


class TestGenerate:
    def test_header_and_app_id(self):
        text = generate_flow_yaml([], app_id="com.example", name="Login",
                                  recorded_at="2026-01-01T00:00:00+00:00")
        assert text.startswith("# Maestro Flow: Login\n# Recorded: 2026-01-01T00:00:00+00:00")
        assert "appId: com.example\n---" in text

    def test_placeholder_when_app_id_missing(self):
        text = generate_flow_yaml([TapAction(x=1, y=2)])
        assert f"appId: {APP_ID_PLACEHOLDER}" in text

    def test_app_id_from_first_launch(self):
        text = generate_flow_yaml([LaunchAction(app_id="com.first"), LaunchAction(app_id="com.second")])
        assert "appId: com.first" in text

    def test_tap_prefers_text_over_point(self):
        text = generate_flow_yaml([TapAction(x=1, y=2, text="OK")])
        assert 'text: "OK"' in text
        assert "point" not in text

    def test_tap_point(self):
        assert 'point: "540,1200"' in generate_flow_yaml([TapAction(x=540, y=1200)])

    def test_back_and_home_are_press_key(self):
        text = generate_flow_yaml([BackAction(), HomeAction()])
        assert _command_lines(text) == ["- pressKey: back", "- pressKey: home"]

    def test_wait_timeout_in_milliseconds(self):
        assert "timeout: 2000" in generate_flow_yaml([WaitAction(seconds=2)])

    def test_description_comment_precedes_command(self):
        lines = generate_flow_yaml([TapAction(x=1, y=2, description="Open menu")]).splitlines()
        index = lines.index("# Open menu")
        assert lines[index + 1] == "- tapOn:"

    def test_multiline_description_stays_one_comment(self):
        text = generate_flow_yaml([BackAction(description="first\nsecond")])
        assert "# first second" in text

    def test_blocks_follow_action_order(self):
        actions = [TapAction(x=i, y=i) for i in range(7)] + [InputAction(text="x"), BackAction()]
        text = generate_flow_yaml(actions)
        commands = _command_lines(text)
        assert len(commands) == len(actions)
        assert commands[-2:] == ['- inputText: "x"', "- pressKey: back"]

    def test_output_is_valid_yaml(self):
        text = generate_flow_yaml(ROUND_TRIP_CASES, app_id="com.example")
        config, commands = list(yaml.safe_load_all(text))
        assert config == {"appId": "com.example"}
        assert len(commands) == len(ROUND_TRIP_CASES)


# ===================================================================
# Parsing
# ===================================================================


NATIVE_FLOW = """\
appId: com.android.settings
---
- launchApp
- tapOn:
    point: "50%,25%"
- tapOn: "Network & internet"
- swipe:
    start: "500,1500"
    end: "500,400"
    duration: 350
- inputText: "wifi"
- pressKey: Enter
- back
- waitForAnimationToEnd
- assertVisible: "Internet"
"""


class TestParse:
    def test_parses_native_flow(self):
        parsed = parse_flow_yaml(NATIVE_FLOW, screen_size=(1080, 2400))
        assert parsed.app_id == "com.android.settings"
        types = [a.action_type.value for a in parsed.actions]
        assert types == ["launch", "tap", "tap", "swipe", "input", "pressKey", "back", "assert"]
        point_tap = parsed.actions[1]
        assert (point_tap.x, point_tap.y) == (540, 600)
        assert parsed.actions[2].text == "Network & internet"
        swipe = parsed.actions[3]
        assert (swipe.x, swipe.y, swipe.end_x, swipe.end_y, swipe.duration_ms) == (500, 1500, 500, 400, 350)

    def test_assigns_sequential_ids(self):
        parsed = parse_flow_yaml(NATIVE_FLOW)
        assert [a.id for a in parsed.actions[:3]] == ["action_001", "action_002", "action_003"]

    def test_percent_point_without_screen_size_is_dropped(self):
        parsed = parse_flow_yaml('- tapOn:\n    point: "50%,50%"\n')
        assert parsed.actions == []

    def test_incomplete_swipe_is_not_emitted(self):
        parsed = parse_flow_yaml('- swipe:\n    start: "1,2"\n- back\n')
        assert [a.action_type.value for a in parsed.actions] == ["back"]

    def test_wait_without_timeout_is_not_emitted(self):
        parsed = parse_flow_yaml('- extendedWaitUntil:\n    visible: "Done"\n')
        assert parsed.actions == []

    def test_unknown_lines_are_ignored(self):
        text = "appId: x\nname: demo\n---\n- runScript: setup.js\n- stopApp\n- pressKey: home\nrandom"
        parsed = parse_flow_yaml(text)
        assert [a.action_type.value for a in parsed.actions] == ["home"]

    def test_placeholder_app_id_is_ignored(self):
        parsed = parse_flow_yaml(generate_flow_yaml([BackAction()]))
        assert parsed.app_id is None

    def test_block_launch_app(self):
        parsed = parse_flow_yaml('- launchApp:\n    appId: "com.block"\n    clearState: true\n')
        assert parsed.actions[0].app_id == "com.block"

    def test_descriptions_come_from_comments(self):
        parsed = parse_flow_yaml(generate_flow_yaml([TapAction(x=1, y=1, description="Open menu")]))
        assert parsed.actions[0].description == "Open menu"

    def test_empty_text(self):
        parsed = parse_flow_yaml("")
        assert parsed.app_id is None
        assert parsed.actions == []


class TestParsePoint:
    def test_pixels(self):
        assert _parse_point("10, 20") == (10, 20)

    def test_percentages(self):
        assert _parse_point("10%,50%", (1000, 2000)) == (100, 1000)

    def test_invalid(self):
        assert _parse_point("abc") is None
        assert _parse_point("1,2,3") is None
        assert _parse_point(None) is None


class TestRoundTrip:
    @pytest.mark.parametrize("action", ROUND_TRIP_CASES, ids=lambda a: a.label)
    def test_single_action_round_trip(self, action):
        parsed = parse_flow_yaml(generate_flow_yaml([action]))
        assert len(parsed.actions) == 1
        result = parsed.actions[0]
        assert type(result) is type(action)
        assert result.typed_fields() == action.typed_fields()

    def test_app_id_round_trip(self):
        parsed = parse_flow_yaml(generate_flow_yaml([BackAction()], app_id="com.example"))
        assert parsed.app_id == "com.example"


class TestValidate:
    def test_valid_flow(self):
        assert validate_flow_yaml(generate_flow_yaml([TapAction(x=1, y=2)])) is None

    def test_invalid_flow(self):
        assert validate_flow_yaml("- tapOn: [unclosed") is not None
