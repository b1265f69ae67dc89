"""Progress aggregation for hierarchical sub-agent work.

Nodes live in an arena keyed by id with a separate parent map, so
late-arriving parents and reparenting never create reference cycles.

Rules:
- status moves forward only: pending → running → {succeeded, failed}
  (pending may go straight to a terminal status)
- percentage never decreases while running
- terminal nodes are frozen; later events for them are anomalies
- an unknown parent id creates a placeholder orphan root that is filled in
  (and reparented) when its own event arrives; progress is never dropped
- nodes are never deleted during a session
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass

from .models import ProgressNode, ProgressStatus, utcnow
from .protocol import ProgressEvent

_LOGGER = logging.getLogger(__name__)

_STATUS_ORDER = {
    ProgressStatus.PENDING: 0,
    ProgressStatus.RUNNING: 1,
    ProgressStatus.SUCCEEDED: 2,
    ProgressStatus.FAILED: 2,
}


@dataclass(frozen=True)
class ProgressAnomaly:
    """An event that was rejected or only partially applied."""

    node_id: str
    reason: str


class ProgressAggregator:
    """Maintains the ProgressNode forest of one Project."""

    def __init__(self, project_id: str) -> None:
        self.project_id = project_id
        self._nodes: dict[str, ProgressNode] = {}
        self._parents: dict[str, str | None] = {}
        self._children: dict[str, list[str]] = {}
        self.anomalies: list[ProgressAnomaly] = []

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def get(self, node_id: str) -> ProgressNode | None:
        return self._nodes.get(node_id)

    def children(self, node_id: str) -> list[ProgressNode]:
        return [self._nodes[c] for c in self._children.get(node_id, [])]

    def roots(self) -> list[ProgressNode]:
        return [n for nid, n in self._nodes.items() if self._parents[nid] is None]

    def orphans(self) -> list[ProgressNode]:
        """Placeholder nodes still waiting for their own event."""
        return [n for n in self._nodes.values() if n.placeholder]

    # -------------------------------------------------------------------------
    # Event application
    # -------------------------------------------------------------------------

    def apply(self, event: ProgressEvent) -> list[ProgressNode]:
        """Apply one event.

        Returns:
            Nodes that changed (created placeholders first, then the event's
            node), empty if the event was rejected as an anomaly.
        """
        changed: list[ProgressNode] = []
        status = ProgressStatus(event.status)
        current = self._nodes.get(event.node_id)

        if current is not None and current.status.is_terminal:
            self._anomaly(
                event.node_id, f"event after terminal status {current.status.value}"
            )
            return []

        if event.parent_id is not None:
            if event.parent_id == event.node_id:
                self._anomaly(event.node_id, "node cannot be its own parent")
                return []
            if event.parent_id not in self._nodes:
                changed.append(self._create_placeholder(event.parent_id))

        if current is None:
            node = self._create(event, status)
        else:
            node = self._update(current, event, status)
            if node is None:
                return changed

        changed.append(node)
        return changed

    def _create(self, event: ProgressEvent, status: ProgressStatus) -> ProgressNode:
        now = utcnow()
        node = ProgressNode(
            id=event.node_id,
            parent_id=event.parent_id,
            label=event.label,
            status=status,
            percentage=_initial_percentage(status, event.percentage),
            started_at=now if status is not ProgressStatus.PENDING else None,
            ended_at=now if status.is_terminal else None,
        )
        self._nodes[node.id] = node
        self._parents[node.id] = None
        self._set_parent(node.id, event.parent_id)
        return node

    def _create_placeholder(self, node_id: str) -> ProgressNode:
        _LOGGER.debug(
            "[%s] Progress parent %s unknown, creating placeholder",
            self.project_id,
            node_id,
        )
        node = ProgressNode(id=node_id, parent_id=None, label="", placeholder=True)
        self._nodes[node_id] = node
        self._parents[node_id] = None
        return node

    def _update(
        self, current: ProgressNode, event: ProgressEvent, status: ProgressStatus
    ) -> ProgressNode | None:
        if _STATUS_ORDER[status] < _STATUS_ORDER[current.status]:
            self._anomaly(
                current.id,
                f"status regression {current.status.value} → {status.value}",
            )
            return None

        percentage = event.percentage
        if (
            current.status is ProgressStatus.RUNNING
            and status is ProgressStatus.RUNNING
            and percentage < current.percentage
        ):
            self._anomaly(
                current.id,
                f"percentage decrease {current.percentage} → {percentage}",
            )
            percentage = current.percentage
        percentage = _initial_percentage(status, percentage)

        parent_id = current.parent_id
        if event.parent_id is not None and event.parent_id != current.parent_id:
            if self._would_cycle(current.id, event.parent_id):
                self._anomaly(current.id, f"reparenting under {event.parent_id} forms a cycle")
            else:
                self._set_parent(current.id, event.parent_id)
                parent_id = event.parent_id

        now = utcnow()
        node = dataclasses.replace(
            current,
            parent_id=parent_id,
            label=event.label or current.label,
            status=status,
            percentage=percentage,
            placeholder=False,
            started_at=current.started_at
            or (now if status is not ProgressStatus.PENDING else None),
            ended_at=now if status.is_terminal else None,
        )
        self._nodes[current.id] = node
        return node

    def _set_parent(self, node_id: str, parent_id: str | None) -> None:
        old_parent = self._parents.get(node_id)
        if old_parent is not None:
            siblings = self._children.get(old_parent, [])
            if node_id in siblings:
                siblings.remove(node_id)
        self._parents[node_id] = parent_id
        if parent_id is not None:
            self._children.setdefault(parent_id, []).append(node_id)

    def _would_cycle(self, node_id: str, new_parent_id: str) -> bool:
        cursor: str | None = new_parent_id
        while cursor is not None:
            if cursor == node_id:
                return True
            cursor = self._parents.get(cursor)
        return False

    def _anomaly(self, node_id: str, reason: str) -> None:
        _LOGGER.warning("[%s] Progress anomaly for %s: %s", self.project_id, node_id, reason)
        self.anomalies.append(ProgressAnomaly(node_id=node_id, reason=reason))

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def snapshot(self) -> list[ProgressNode]:
        """Read-only copy of every node, parents before children."""
        ordered: list[ProgressNode] = []
        seen: set[str] = set()

        def visit(node_id: str) -> None:
            if node_id in seen:
                return
            seen.add(node_id)
            ordered.append(self._nodes[node_id])
            for child in self._children.get(node_id, []):
                visit(child)

        for node_id, parent in self._parents.items():
            if parent is None:
                visit(node_id)
        return ordered

    def load(self, nodes: list[ProgressNode]) -> None:
        """Replace the tree with ``nodes`` (e.g. from a resync snapshot)."""
        self._nodes.clear()
        self._parents.clear()
        self._children.clear()
        for node in nodes:
            self._nodes[node.id] = node
            self._parents[node.id] = None
        for node in nodes:
            if node.parent_id is not None:
                if node.parent_id not in self._nodes:
                    self._create_placeholder(node.parent_id)
                self._parents[node.id] = node.parent_id
                self._children.setdefault(node.parent_id, []).append(node.id)

    def reset(self) -> None:
        self.load([])
        self.anomalies.clear()


def _initial_percentage(status: ProgressStatus, percentage: float) -> float:
    if status is ProgressStatus.SUCCEEDED:
        return 100.0
    return float(percentage)
