"""
Approval Aggregator — derive a submission's overall status from its channels.

Pure functions, no store access. The result depends only on the current
channel snapshot, never on the order decisions arrived in:

    any required channel rejected   -> "rejected"   (terminal)
    all required channels approved  -> "approved"
    otherwise                       -> "under_review"

Channels outside ``required_channels`` are ignored. A required channel
missing from the snapshot counts as pending.
"""

from __future__ import annotations

from typing import Iterable, Mapping

from phdtrack.models.workflow import (
    CHANNEL_APPROVED,
    CHANNEL_NOT_REQUIRED,
    CHANNEL_PENDING,
    CHANNEL_REJECTED,
    CHANNEL_STATUSES,
    CHANNELS,
    STATUS_APPROVED,
    STATUS_REJECTED,
    STATUS_UNDER_REVIEW,
)


def aggregate(required_channels: Iterable[str], per_channel_status: Mapping[str, str]) -> str:
    required = set(required_channels)
    unknown = (required | set(per_channel_status)) - set(CHANNELS)
    if unknown:
        raise ValueError(f"Unknown approval channel(s): {', '.join(sorted(unknown))}")

    statuses = [per_channel_status.get(ch, CHANNEL_PENDING) for ch in CHANNELS if ch in required]
    for status in statuses:
        if status not in CHANNEL_STATUSES:
            raise ValueError(f"Unknown channel status: {status!r}")

    if any(s == CHANNEL_REJECTED for s in statuses):
        return STATUS_REJECTED
    if all(s == CHANNEL_APPROVED for s in statuses):
        return STATUS_APPROVED
    return STATUS_UNDER_REVIEW


def initial_channel_statuses(required_channels: Iterable[str]) -> dict[str, str]:
    """Snapshot for a fresh submission: required channels pending, the rest n/a."""
    required = set(required_channels)
    return {
        ch: CHANNEL_PENDING if ch in required else CHANNEL_NOT_REQUIRED
        for ch in CHANNELS
    }
