"""Tests for ProgressAggregator."""

from __future__ import annotations

from pocket_agent_core.models import ProgressNode, ProgressStatus
from pocket_agent_core.progress import ProgressAggregator
from pocket_agent_core.protocol import ProgressEvent


def event(node_id, status="running", percentage=0.0, parent_id=None, label=""):
    return ProgressEvent(
        node_id=node_id,
        parent_id=parent_id,
        label=label or node_id,
        status=status,
        percentage=percentage,
    )


class TestProgressAggregator:
    """Tests for event application."""

    def test_create_root(self):
        """Test a first event creates a running root node."""
        aggregator = ProgressAggregator("p1")

        changed = aggregator.apply(event("n1", percentage=10))

        assert [node.id for node in changed] == ["n1"]
        node = aggregator.get("n1")
        assert node.status is ProgressStatus.RUNNING
        assert node.started_at is not None
        assert aggregator.roots() == [node]

    def test_orphan_is_kept_and_reparented(self):
        """Test a child arriving before its parent is kept under a placeholder."""
        aggregator = ProgressAggregator("p1")

        changed = aggregator.apply(event("n2", parent_id="n1", percentage=30))

        assert [node.id for node in changed] == ["n1", "n2"]
        assert [node.id for node in aggregator.orphans()] == ["n1"]
        assert aggregator.get("n2").parent_id == "n1"

        aggregator.apply(event("n1", percentage=5, label="build"))

        assert aggregator.orphans() == []
        assert aggregator.get("n1").label == "build"
        assert [child.id for child in aggregator.children("n1")] == ["n2"]
        assert [node.id for node in aggregator.snapshot()] == ["n1", "n2"]

    def test_percentage_never_decreases(self):
        """Test a lower percentage while running is clamped and recorded."""
        aggregator = ProgressAggregator("p1")
        aggregator.apply(event("n1", percentage=60))

        aggregator.apply(event("n1", percentage=40))

        assert aggregator.get("n1").percentage == 60
        assert aggregator.anomalies[-1].node_id == "n1"

    def test_failure_reports_own_percentage(self):
        """Test a failing node may report less than its last running percentage."""
        aggregator = ProgressAggregator("p1")
        aggregator.apply(event("n1", percentage=60))

        aggregator.apply(event("n1", status="failed", percentage=40))

        node = aggregator.get("n1")
        assert node.status is ProgressStatus.FAILED
        assert node.percentage == 40
        assert aggregator.anomalies == []

    def test_succeeded_sets_full(self):
        """Test a succeeded node reports 100 percent."""
        aggregator = ProgressAggregator("p1")
        aggregator.apply(event("n1", percentage=70))

        aggregator.apply(event("n1", status="succeeded", percentage=70))

        node = aggregator.get("n1")
        assert node.percentage == 100
        assert node.ended_at is not None

    def test_terminal_is_frozen(self):
        """Test events after a terminal status are rejected."""
        aggregator = ProgressAggregator("p1")
        aggregator.apply(event("n1", status="failed", percentage=20))

        changed = aggregator.apply(event("n1", status="running", percentage=50))

        assert changed == []
        assert aggregator.get("n1").status is ProgressStatus.FAILED
        assert "terminal" in aggregator.anomalies[-1].reason

    def test_status_regression_rejected(self):
        """Test running cannot go back to pending."""
        aggregator = ProgressAggregator("p1")
        aggregator.apply(event("n1", percentage=10))

        assert aggregator.apply(event("n1", status="pending")) == []
        assert aggregator.get("n1").status is ProgressStatus.RUNNING

    def test_pending_straight_to_failed(self):
        """Test pending may move directly to a terminal status."""
        aggregator = ProgressAggregator("p1")
        aggregator.apply(event("n1", status="pending"))

        aggregator.apply(event("n1", status="failed"))

        assert aggregator.get("n1").status is ProgressStatus.FAILED

    def test_self_parent_rejected(self):
        """Test a node naming itself as parent is an anomaly."""
        aggregator = ProgressAggregator("p1")

        assert aggregator.apply(event("n1", parent_id="n1")) == []
        assert "n1" not in aggregator

    def test_cycle_rejected(self):
        """Test reparenting that would form a cycle is refused."""
        aggregator = ProgressAggregator("p1")
        aggregator.apply(event("a"))
        aggregator.apply(event("b", parent_id="a"))

        aggregator.apply(event("a", parent_id="b", percentage=5))

        assert aggregator.get("a").parent_id is None
        assert "cycle" in aggregator.anomalies[-1].reason

    def test_load_and_reset(self):
        """Test load replaces the tree and recreates missing parents."""
        aggregator = ProgressAggregator("p1")
        aggregator.load(
            [
                ProgressNode(id="c", parent_id="root", label="child",
                             status=ProgressStatus.RUNNING, percentage=10),
            ]
        )

        assert [node.id for node in aggregator.orphans()] == ["root"]
        assert [child.id for child in aggregator.children("root")] == ["c"]

        aggregator.reset()
        assert len(aggregator) == 0
        assert aggregator.anomalies == []
