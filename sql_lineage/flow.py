# -*- coding: utf-8 -*-
import logging
from collections import deque
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import networkx as nx

from sql_lineage import config
from sql_lineage.graph import LineageGraph
from sql_lineage.models import (
    Direction,
    FlowResult,
    LineageEdge,
    LineageNode,
    LineagePath,
    NodeType,
    PathStep,
)
from sql_lineage.utils import normalize_depth

logger = logging.getLogger('sql_lineage.flow')


class FlowAnalyzer:
    """
    Bounded upstream/downstream reachability over the structural edges of one
    snapshot. Traversal is breadth-first with a visited set seeded with the
    queried node, so cycles terminate and every node is reported once, at the
    smallest depth it was found.
    """

    def __init__(self, graph: LineageGraph, default_depth: int = config.DEFAULT_LINEAGE_DEPTH):
        self.graph = graph
        self.default_depth = default_depth

    def get_upstream(self, node_id: str, max_depth=None, exclude_external: bool = False,
                     node_types: Optional[Sequence[NodeType]] = None) -> FlowResult:
        """Everything ``node_id`` reads from, closest first."""
        return self._traverse(node_id, Direction.UPSTREAM, max_depth, exclude_external, node_types)

    def get_downstream(self, node_id: str, max_depth=None, exclude_external: bool = False,
                       node_types: Optional[Sequence[NodeType]] = None) -> FlowResult:
        """Everything that reads from ``node_id``, closest first."""
        return self._traverse(node_id, Direction.DOWNSTREAM, max_depth, exclude_external, node_types)

    def get_lineage(self, node_id: str, direction: Direction = Direction.BOTH, max_depth=None,
                    exclude_external: bool = False) -> FlowResult:
        direction = Direction(direction)
        if direction != Direction.BOTH:
            return self._traverse(node_id, direction, max_depth, exclude_external, None)

        upstream = self.get_upstream(node_id, max_depth, exclude_external)
        downstream = self.get_downstream(node_id, max_depth, exclude_external)
        merged = FlowResult(node_id, Direction.BOTH)
        for part in (upstream, downstream):
            for node in part.nodes:
                if node.id not in merged.depths:
                    merged.nodes.append(node)
                    merged.depths[node.id] = part.depths[node.id]
                else:
                    merged.depths[node.id] = min(merged.depths[node.id], part.depths[node.id])
            merged.paths.extend(part.paths)
            for edge in part.edges:
                if edge not in merged.edges:
                    merged.edges.append(edge)
        return merged

    def _traverse(self, node_id: str, direction: Direction, max_depth, exclude_external: bool,
                  node_types: Optional[Sequence[NodeType]]) -> FlowResult:
        result = FlowResult(node_id, direction)
        root = self.graph.get_node(node_id)
        if root is None:
            return result

        depth_limit = normalize_depth(max_depth, self.default_depth)
        upstream = direction == Direction.UPSTREAM
        visited = {node_id}
        parents: Dict[str, Tuple[str, LineageEdge]] = {}
        reached: List[str] = []
        depths: Dict[str, int] = {}
        root_cycle: Optional[Tuple[str, LineageEdge]] = None
        edges: Dict[str, LineageEdge] = {}

        frontier = deque([(node_id, 0)])
        while frontier:
            current, depth = frontier.popleft()
            if depth >= depth_limit:
                continue
            for edge in (self.graph.incoming_edges(current) if upstream else self.graph.outgoing_edges(current)):
                neighbor = edge.source_id if upstream else edge.target_id
                edges.setdefault(edge.id, edge)
                if neighbor == node_id:
                    # The queried node is reachable from itself; report it once and stop there
                    if root_cycle is None:
                        root_cycle = (current, edge)
                        depths[node_id] = depth + 1
                        reached.append(node_id)
                    continue
                if neighbor in visited:
                    continue
                visited.add(neighbor)
                parents[neighbor] = (current, edge)
                depths[neighbor] = depth + 1
                reached.append(neighbor)
                frontier.append((neighbor, depth + 1))

        for reached_id in reached:
            node = self.graph.get_node(reached_id)
            if exclude_external and node.type == NodeType.EXTERNAL:
                continue
            if node_types and node.type not in node_types:
                continue
            result.nodes.append(node)
            result.depths[reached_id] = depths[reached_id]
            if reached_id == node_id:
                parent_id, edge = root_cycle
                result.paths.append(self._path_to(node_id, parent_id, parents, tail=(root, edge)))
            else:
                result.paths.append(self._path_to(node_id, reached_id, parents))

        result.edges = list(edges.values())
        logger.debug(f"{direction.value} of {node_id}: {len(result.nodes)} nodes within depth {depth_limit}")
        return result

    def _path_to(self, root_id: str, node_id: str, parents: Dict[str, Tuple[str, LineageEdge]],
                 tail: Optional[Tuple[LineageNode, LineageEdge]] = None) -> LineagePath:
        steps: List[PathStep] = []
        if tail is not None:
            steps.append(_step(*tail))
        current = node_id
        while current != root_id:
            parent_id, edge = parents[current]
            steps.append(_step(self.graph.get_node(current), edge))
            current = parent_id
        steps.append(_step(self.graph.get_node(root_id), None))
        steps.reverse()
        return LineagePath(tuple(steps))

    def get_path_between(self, source_id: str, target_id: str, max_depth=None) -> Optional[LineagePath]:
        """Shortest data-flow path from ``source_id`` down to ``target_id``, if one exists within depth."""
        if not self.graph.has_node(source_id) or not self.graph.has_node(target_id):
            return None
        if source_id == target_id:
            return LineagePath((_step(self.graph.get_node(source_id), None),))

        depth_limit = normalize_depth(max_depth, self.default_depth)
        parents: Dict[str, Tuple[str, LineageEdge]] = {}
        visited = {source_id}
        frontier = deque([(source_id, 0)])
        while frontier:
            current, depth = frontier.popleft()
            if depth >= depth_limit:
                continue
            for edge in self.graph.outgoing_edges(current):
                neighbor = edge.target_id
                if neighbor in visited:
                    continue
                visited.add(neighbor)
                parents[neighbor] = (current, edge)
                if neighbor == target_id:
                    return self._path_to(source_id, target_id, parents)
                frontier.append((neighbor, depth + 1))
        return None

    def find_root_sources(self) -> List[LineageNode]:
        """Structural nodes that feed others but read nothing themselves."""
        return [
            node for node in self.graph.structural_nodes()
            if self._real_edges(self.graph.outgoing_edges(node.id)) and not self._real_edges(self.graph.incoming_edges(node.id))
        ]

    def find_terminal_nodes(self) -> List[LineageNode]:
        """Structural nodes that read from others but feed nothing."""
        return [
            node for node in self.graph.structural_nodes()
            if self._real_edges(self.graph.incoming_edges(node.id)) and not self._real_edges(self.graph.outgoing_edges(node.id))
        ]

    @staticmethod
    def _real_edges(edges: Iterable[LineageEdge]) -> List[LineageEdge]:
        return [edge for edge in edges if edge.source_id != edge.target_id]

    def detect_cycles(self) -> List[List[str]]:
        """Dependency cycles (self-references included), each rotated to start at its smallest id."""
        structural = nx.DiGraph(self.graph.to_networkx())
        cycles = []
        for cycle in nx.simple_cycles(structural):
            start = cycle.index(min(cycle))
            cycles.append(cycle[start:] + cycle[:start])
        return sorted(cycles)


def _step(node: LineageNode, edge: Optional[LineageEdge]) -> PathStep:
    return PathStep(
        node_id=node.id,
        node_name=node.name,
        node_type=node.type,
        expression=edge.metadata.get('join_condition') if edge is not None else None,
        edge_type=edge.type if edge is not None else None,
    )
