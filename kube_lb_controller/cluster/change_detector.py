"""Configuration diff engine turning two snapshots into group-level changes."""

from __future__ import annotations

import enum
import logging
from collections.abc import Mapping
from dataclasses import dataclass

from .models import GROUP_SEPARATOR

logger = logging.getLogger(__name__)


class GroupChange(enum.Enum):
    ADDED = "added"
    REMOVED = "removed"
    UPDATED = "updated"


@dataclass(frozen=True)
class KeyDiff:
    """A single differing key; ``None`` marks absence from that snapshot."""

    key: str
    old: str | None
    new: str | None


@dataclass(frozen=True)
class GroupDiff:
    group: str
    change: GroupChange
    keys: tuple[str, ...] = ()


def group_name(key: str) -> str:
    """The group owning a key: everything before the first separator."""
    return key.split(GROUP_SEPARATOR, 1)[0]


def config_groups(snapshot: Mapping[str, str]) -> set[str]:
    """All group names present in a snapshot."""
    return {group_name(k) for k in snapshot}


def key_diff(old: Mapping[str, str], new: Mapping[str, str]) -> list[KeyDiff]:
    """Key-level differences between two snapshots, sorted by key."""
    if old == new:
        return []

    diffs: list[KeyDiff] = []
    for key, value in new.items():
        if key not in old:
            diffs.append(KeyDiff(key, None, value))
        elif old[key] != value:
            diffs.append(KeyDiff(key, old[key], value))
    for key, value in old.items():
        if key not in new:
            diffs.append(KeyDiff(key, value, None))

    diffs.sort(key=lambda d: d.key)
    return diffs


def diff_snapshots(old: Mapping[str, str], new: Mapping[str, str]) -> list[GroupDiff]:
    """Classify every group touched by a differing key as added, removed or updated.

    Only the differing keys are grouped, so the work is proportional to the size
    of the change. A group is REMOVED when none of its keys survive in ``new``,
    ADDED when none of its keys existed in ``old``, and UPDATED otherwise.
    """
    diffs = key_diff(old, new)
    if not diffs:
        return []

    changed_keys: dict[str, list[str]] = {}
    for d in diffs:
        changed_keys.setdefault(group_name(d.key), []).append(d.key)

    old_groups = config_groups(old)
    new_groups = config_groups(new)

    result: list[GroupDiff] = []
    for group in sorted(changed_keys):
        if group not in new_groups:
            change = GroupChange.REMOVED
        elif group not in old_groups:
            change = GroupChange.ADDED
        else:
            change = GroupChange.UPDATED
        result.append(GroupDiff(group, change, tuple(changed_keys[group])))

    logger.debug(
        "Config diff: %d changed keys across %d groups",
        len(diffs), len(result),
    )
    return result
