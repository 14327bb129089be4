"""
Tests — approval aggregation over channel snapshots.

Pure functions; no database access needed beyond the autouse fixture.
"""

import itertools

import pytest

from phdtrack.services.approval_aggregator import aggregate, initial_channel_statuses


class TestAggregate:
    def test_all_required_approved(self):
        assert aggregate({"supervisor", "admin"}, {"supervisor": "approved", "admin": "approved"}) == "approved"

    def test_partial_approval_is_under_review(self):
        assert aggregate({"supervisor", "admin"}, {"supervisor": "approved", "admin": "pending"}) == "under_review"

    def test_any_rejection_wins(self):
        assert aggregate({"supervisor", "admin"}, {"supervisor": "approved", "admin": "rejected"}) == "rejected"
        assert aggregate({"supervisor", "admin"}, {"supervisor": "rejected", "admin": "pending"}) == "rejected"

    def test_missing_required_channel_counts_as_pending(self):
        assert aggregate({"gec"}, {}) == "under_review"
        assert aggregate({"gec", "admin"}, {"admin": "approved"}) == "under_review"

    def test_channels_outside_required_set_are_ignored(self):
        snapshot = {"admin": "approved", "supervisor": "n/a", "gec": "rejected"}
        assert aggregate({"admin"}, snapshot) == "approved"

    def test_no_required_channels_is_approved(self):
        assert aggregate(set(), {"admin": "n/a", "supervisor": "n/a", "gec": "n/a"}) == "approved"

    def test_result_independent_of_decision_order(self):
        decisions = [("gec", "approved"), ("admin", "rejected"), ("supervisor", "approved")]
        outcomes = set()
        for order in itertools.permutations(decisions):
            snapshot = {}
            for channel, status in order:
                snapshot[channel] = status
            outcomes.add(aggregate({"gec", "admin", "supervisor"}, snapshot))
        assert outcomes == {"rejected"}

    def test_unknown_channel_raises(self):
        with pytest.raises(ValueError, match="dean"):
            aggregate({"dean"}, {})

    def test_unknown_status_raises(self):
        with pytest.raises(ValueError):
            aggregate({"admin"}, {"admin": "maybe"})


def test_initial_channel_statuses():
    assert initial_channel_statuses({"supervisor"}) == {
        "admin": "n/a",
        "supervisor": "pending",
        "gec": "n/a",
    }
    assert initial_channel_statuses(set()) == {"admin": "n/a", "supervisor": "n/a", "gec": "n/a"}
