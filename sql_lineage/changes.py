# -*- coding: utf-8 -*-
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Set, Tuple

import networkx as nx

from sql_lineage.graph import LineageGraph
from sql_lineage.models import STRUCTURAL_NODE_TYPES


@dataclass
class ChangeSet:
    added_nodes: List[str] = field(default_factory=list)
    removed_nodes: List[str] = field(default_factory=list)
    added_edges: List[Tuple[str, str]] = field(default_factory=list)
    removed_edges: List[Tuple[str, str]] = field(default_factory=list)
    impacted_nodes: List[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return any([self.added_nodes, self.removed_nodes, self.added_edges, self.removed_edges])

    def to_dict(self):
        return {
            'addedNodes': self.added_nodes,
            'removedNodes': self.removed_nodes,
            'addedEdges': [list(edge) for edge in self.added_edges],
            'removedEdges': [list(edge) for edge in self.removed_edges],
            'impactedNodes': self.impacted_nodes,
        }


class ChangeDetector:
    """Compares two LineageGraph snapshots and reports significant changes."""

    def __init__(self, old_graph: Optional[LineageGraph], new_graph: LineageGraph):
        self.old_graph = old_graph if old_graph is not None else LineageGraph()
        self.new_graph = new_graph
        self.logger = logging.getLogger('sql_lineage.detector')

    def detect(self) -> ChangeSet:
        """Finds additions and removals; edges are compared by (source, target) pair."""
        old_nodes, new_nodes = set(self.old_graph.nodes), set(self.new_graph.nodes)
        old_edges = {(edge.source_id, edge.target_id) for edge in self.old_graph.edges}
        new_edges = {(edge.source_id, edge.target_id) for edge in self.new_graph.edges}

        changes = ChangeSet(
            added_nodes=sorted(new_nodes - old_nodes),
            removed_nodes=sorted(old_nodes - new_nodes),
            added_edges=sorted(new_edges - old_edges),
            removed_edges=sorted(old_edges - new_edges),
        )
        changes.impacted_nodes = sorted(self._impacted(set(changes.removed_nodes), set(changes.removed_edges)))
        return changes

    def _impacted(self, removed_nodes: Set[str], removed_edges: Set[Tuple[str, str]]) -> Set[str]:
        """Structural nodes of the new graph that lost an input, plus everything downstream of them."""
        directly_affected = set()
        for source, target in removed_edges:
            if self.new_graph.has_node(target):
                directly_affected.add(target)

        old_structure = self.old_graph.to_networkx()
        for node_id in removed_nodes:
            if node_id in old_structure:
                for consumer in old_structure.successors(node_id):
                    if self.new_graph.has_node(consumer):
                        directly_affected.add(consumer)

        new_structure = self.new_graph.to_networkx()
        impacted = set()
        for node_id in directly_affected:
            impacted.add(node_id)
            impacted.update(nx.descendants(new_structure, node_id))
        return {node_id for node_id in impacted if self.new_graph.get_node(node_id).type in STRUCTURAL_NODE_TYPES}

    def report_changes(self) -> ChangeSet:
        """Finds and logs additions, removals, and their impact."""
        changes = self.detect()
        if not self.old_graph.nodes:
            self.logger.info("Previous state not found, skipping comparison.")
            return changes

        self.logger.info("-" * 30)
        self.logger.info("Comparing with previous state:")
        if not changes.has_changes:
            self.logger.info("No structural changes detected.")
            return changes

        if changes.added_nodes:
            self.logger.info(f"Added nodes ({len(changes.added_nodes)}): {changes.added_nodes}")
        if changes.removed_nodes:
            self.logger.info(f"Deleted nodes ({len(changes.removed_nodes)}): {changes.removed_nodes}")
        if changes.added_edges:
            self.logger.info(f"Added dependencies ({len(changes.added_edges)}): {[f'{u} -> {v}' for u, v in changes.added_edges]}")
        if changes.removed_edges:
            self.logger.info(f"Removed dependencies ({len(changes.removed_edges)}): {[f'{u} -> {v}' for u, v in changes.removed_edges]}")

        if changes.impacted_nodes:
            self.logger.info(f"  Impacted objects ({len(changes.impacted_nodes)}): {changes.impacted_nodes}")
        else:
            self.logger.info("Removed elements did not affect any existing models.")
        self.logger.info("-" * 30)
        return changes
