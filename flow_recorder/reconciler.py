"""
Action Reconciler — merges the native recorder's actions with local ones.

Actions parsed from the ``maestro record`` flow classify gestures better but
have no screenshots; the locally recorded actions carry screenshots.  The
merge is an ordered zip: every parsed action of a screenshot-bearing type
consumes the next unused local action that has a screenshot and takes its
id, timestamp and screenshot.  Parsed typed fields always win.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import List, Sequence

from flow_recorder.actions import SCREENSHOT_ACTION_TYPES, RecordedAction

logger = logging.getLogger("reconciler")


def _merge(parsed: RecordedAction, local: RecordedAction) -> RecordedAction:
    updates = {
        "id": local.id or parsed.id,
        "timestamp": local.timestamp or parsed.timestamp,
        "screenshot_path": local.screenshot_path,
        "description": parsed.description or local.description,
    }
    stamped = replace(parsed, **updates)
    if type(local) is not type(parsed):
        return stamped

    # Only fill typed fields the parsed action left empty, and only when the
    # local action is the same variant.
    parsed_fields = parsed.typed_fields()
    local_fields = local.typed_fields()
    fills = {
        name: local_fields[name]
        for name, value in parsed_fields.items()
        if value is None and local_fields.get(name) is not None
    }
    if not fills:
        return stamped
    filled = replace(stamped, **fills)
    # A fill must not displace a parsed value (a directional swipe stays
    # directional).
    kept = filled.typed_fields()
    if any(value is not None and kept[name] != value for name, value in parsed_fields.items()):
        return stamped
    return filled


def reconcile_actions(
    parsed: Sequence[RecordedAction],
    recorded: Sequence[RecordedAction],
) -> List[RecordedAction]:
    """Return exactly ``len(parsed)`` actions, or *recorded* if *parsed* is empty."""
    if not parsed:
        return list(recorded)
    if not recorded:
        return list(parsed)

    with_screenshots = [a for a in recorded if a.screenshot_path]
    if not with_screenshots:
        return list(parsed)

    merged: List[RecordedAction] = []
    cursor = 0
    for action in parsed:
        if action.action_type in SCREENSHOT_ACTION_TYPES and cursor < len(with_screenshots):
            merged.append(_merge(action, with_screenshots[cursor]))
            cursor += 1
        else:
            merged.append(action)

    unused = len(with_screenshots) - cursor
    if unused:
        logger.debug("%d local screenshot(s) left unmatched", unused)
    return merged
