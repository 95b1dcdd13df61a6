"""
Exam composition graph.

Composition links form a directed acyclic graph of exams (parent includes
child as a component). Mutations are serialized on a single process-wide
lock. Callers that commit must hold ``graph_mutation()`` until the commit
has finished, so the cycle check of the next mutation always sees the
previous link and two concurrent insertions can never jointly close a cycle.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict, deque
from contextlib import contextmanager

from sqlalchemy.orm import Session

from labexam.errors import (
    InvalidCompositionLink,
    InvalidKindForOperation,
    RecordNotFound,
)
from labexam.models.catalog import CompositionLink, Exam
from labexam.services.audit import log_action
from labexam.services.catalog import get_exam

logger = logging.getLogger(__name__)

# Reentrant: service functions take it again inside graph_mutation()
_graph_lock = threading.RLock()


@contextmanager
def graph_mutation():
    """Hold the graph lock across a mutation and the commit that follows it."""
    with _graph_lock:
        yield


class CompositionGraph:
    """
    Adjacency view of the active composition links.

    Built from a snapshot of the link table; nodes are exam ids.
    """

    def __init__(self, edges: list[tuple[int, int]]):
        self.children: dict[int, list[int]] = defaultdict(list)
        self.nodes: set[int] = set()
        for parent, child in edges:
            self.children[parent].append(child)
            self.nodes.update((parent, child))

    @classmethod
    def load(cls, db: Session) -> CompositionGraph:
        rows = (
            db.query(CompositionLink.parent_exam_id, CompositionLink.child_exam_id)
            .filter(CompositionLink.active.is_(True))
            .all()
        )
        return cls([(parent, child) for parent, child in rows])

    def reachable(self, start: int, target: int) -> bool:
        """True if ``target`` can be reached from ``start`` along links."""
        seen = {start}
        queue = deque([start])
        while queue:
            current = queue.popleft()
            if current == target:
                return True
            for child in self.children.get(current, []):
                if child not in seen:
                    seen.add(child)
                    queue.append(child)
        return False

    def topological_order(self) -> list[int]:
        """Kahn's algorithm – parents before children."""
        in_degree: dict[int, int] = {node: 0 for node in self.nodes}
        for children in self.children.values():
            for child in children:
                in_degree[child] += 1

        queue = deque(sorted(node for node, deg in in_degree.items() if deg == 0))
        order: list[int] = []
        while queue:
            current = queue.popleft()
            order.append(current)
            for child in self.children.get(current, []):
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    queue.append(child)

        if len(order) != len(self.nodes):
            raise InvalidCompositionLink("Cycle detected in exam composition graph")
        return order


def add_link(
    db: Session,
    parent_id: int,
    child_id: int,
    order: int = 0,
    *,
    actor: str | None = None,
) -> CompositionLink:
    """
    Attach ``child_id`` as a component of ``parent_id``.

    Re-adding a previously deactivated pair reactivates it with the new order.
    """
    if parent_id == child_id:
        raise InvalidCompositionLink(f"Exam {parent_id} cannot be its own component")

    with _graph_lock:
        parent = get_exam(db, parent_id)
        child = get_exam(db, child_id)
        if not parent.kind.allows_components:
            raise InvalidKindForOperation(
                f"Exam '{parent.name}' is {parent.kind.value} and cannot have components"
            )
        if not child.kind.allows_own_fields:
            raise InvalidKindForOperation(
                f"Exam '{child.name}' is {child.kind.value} and has no fields to contribute"
            )
        if not child.active:
            raise InvalidKindForOperation(f"Exam '{child.name}' is inactive")

        graph = CompositionGraph.load(db)
        if graph.reachable(child.id, parent.id):
            logger.warning(
                "Rejected composition link %s -> %s: would create a cycle",
                parent.id, child.id,
            )
            raise InvalidCompositionLink(
                f"Adding '{child.name}' to '{parent.name}' would create a cycle"
            )

        link = (
            db.query(CompositionLink)
            .filter(
                CompositionLink.parent_exam_id == parent.id,
                CompositionLink.child_exam_id == child.id,
            )
            .first()
        )
        if link is None:
            link = CompositionLink(
                parent_exam_id=parent.id,
                child_exam_id=child.id,
                display_order=order,
                active=True,
            )
            db.add(link)
        else:
            link.display_order = order
            link.active = True
        db.flush()

        log_action(
            db,
            actor=actor,
            action="add_link",
            resource_type="CompositionLink",
            resource_id=link.id,
            detail={"parent": parent.id, "child": child.id, "order": order},
        )
        return link


def deactivate_link(
    db: Session, parent_id: int, child_id: int, *, actor: str | None = None
) -> CompositionLink:
    """Soft-remove a component; the link row is kept for history."""
    with _graph_lock:
        link = (
            db.query(CompositionLink)
            .filter(
                CompositionLink.parent_exam_id == parent_id,
                CompositionLink.child_exam_id == child_id,
            )
            .first()
        )
        if link is None:
            raise RecordNotFound(f"Exam {child_id} is not a component of exam {parent_id}")
        if link.active:
            link.active = False
            db.flush()
            log_action(
                db,
                actor=actor,
                action="deactivate_link",
                resource_type="CompositionLink",
                resource_id=link.id,
                detail={"parent": parent_id, "child": child_id},
            )
        return link


def reorder_links(db: Session, parent_id: int, orders: dict[int, int]) -> list[CompositionLink]:
    """Set display order for components, keyed by child exam id."""
    with _graph_lock:
        links = (
            db.query(CompositionLink)
            .filter(CompositionLink.parent_exam_id == parent_id)
            .all()
        )
        by_child = {link.child_exam_id: link for link in links}
        missing = set(orders) - set(by_child)
        if missing:
            raise RecordNotFound(
                f"Exam(s) {sorted(missing)} are not components of exam {parent_id}"
            )
        for child_id, order in orders.items():
            by_child[child_id].display_order = order
        db.flush()
    return list_active_links(db, parent_id)


def list_active_links(db: Session, exam_id: int) -> list[CompositionLink]:
    return (
        db.query(CompositionLink)
        .filter(
            CompositionLink.parent_exam_id == exam_id,
            CompositionLink.active.is_(True),
        )
        .order_by(CompositionLink.display_order, CompositionLink.id)
        .all()
    )


def list_active_children(db: Session, exam_id: int) -> list[Exam]:
    """Ordered component exams of ``exam_id`` through active links."""
    return [link.child for link in list_active_links(db, exam_id)]


def check_acyclic(db: Session) -> list[int]:
    """
    Validate the whole active graph, e.g. after out-of-band catalog edits.
    Returns exam ids in topological order.
    """
    return CompositionGraph.load(db).topological_order()
