# -*- coding: utf-8 -*-
import logging
from collections import deque
from typing import List, Optional

from sql_lineage import config
from sql_lineage.graph import LineageGraph
from sql_lineage.models import ColumnEdge, ColumnLineageResult, LineagePath, PathStep, Transformation
from sql_lineage.utils import normalize_depth

logger = logging.getLogger('sql_lineage.columns')


class ColumnLineageResolver:
    """
    Traces one (node, column) pair through column edges.

    Every distinct chain becomes its own path, so a calculated column with three
    inputs yields (at least) three upstream paths. Each path keeps its own set of
    visited columns; a chain that loops back on itself simply ends there.
    """

    def __init__(self, graph: LineageGraph, default_depth: int = config.DEFAULT_LINEAGE_DEPTH,
                 max_paths: int = config.MAX_COLUMN_PATHS):
        self.graph = graph
        self.default_depth = default_depth
        self.max_paths = max_paths

    def resolve(self, node_id: str, column_name: str, max_depth=None) -> ColumnLineageResult:
        result = ColumnLineageResult(node_id, column_name)
        node = self.graph.get_node(node_id)
        if node is None:
            result.warning = f"No lineage available: node '{node_id}' not found"
            return result
        if not column_name or not self.graph.has_column(node_id, column_name):
            result.warning = f"No lineage available for column '{column_name}' on '{node.name}'"
            return result

        result.upstream = self.trace_upstream(node_id, column_name, max_depth)
        result.downstream = self.trace_downstream(node_id, column_name, max_depth)
        return result

    def trace_upstream(self, node_id: str, column_name: str, max_depth=None) -> List[LineagePath]:
        return self._trace(node_id, column_name, True, max_depth)

    def trace_downstream(self, node_id: str, column_name: str, max_depth=None) -> List[LineagePath]:
        return self._trace(node_id, column_name, False, max_depth)

    def _trace(self, node_id: str, column_name: str, upstream: bool, max_depth) -> List[LineagePath]:
        node = self.graph.get_node(node_id)
        if node is None:
            return []

        depth_limit = normalize_depth(max_depth, self.default_depth)
        seed = PathStep(node.id, node.name, node.type, column_name=column_name)
        paths: List[LineagePath] = []
        signatures = set()

        def emit(steps):
            path = LineagePath(tuple(steps))
            if path.signature not in signatures and len(paths) < self.max_paths:
                signatures.add(path.signature)
                paths.append(path)

        queue = deque([((seed,), frozenset({(node_id, column_name.lower())}))])
        while queue and len(paths) < self.max_paths:
            steps, seen = queue.popleft()
            last = steps[-1]
            extended = False
            if len(steps) - 1 < depth_limit:
                for column_edge in self._edges(last, upstream):
                    if column_edge.transformation == Transformation.SOURCE:
                        # Origin marker on a literal column: the chain starts here
                        if upstream:
                            emit(steps + (self._origin_step(column_edge),))
                            extended = True
                        continue
                    next_key = self._next(column_edge, upstream)
                    if next_key in seen:
                        continue
                    queue.append((steps + (self._step(column_edge, upstream),), seen | {next_key}))
                    extended = True
            if not extended and len(steps) > 1:
                emit(steps)

        if len(paths) >= self.max_paths:
            logger.warning(f"Column lineage of {node_id}.{column_name} truncated at {self.max_paths} paths")
        return paths

    def _edges(self, step: PathStep, upstream: bool):
        if upstream:
            return self.graph.column_edges_into(step.node_id, step.column_name)
        return self.graph.column_edges_from(step.node_id, step.column_name)

    @staticmethod
    def _next(column_edge: ColumnEdge, upstream: bool):
        if upstream:
            return column_edge.source_node_id, column_edge.source_column.lower()
        return column_edge.target_node_id, column_edge.target_column.lower()

    def _step(self, column_edge: ColumnEdge, upstream: bool) -> PathStep:
        node_id, column = ((column_edge.source_node_id, column_edge.source_column) if upstream
                           else (column_edge.target_node_id, column_edge.target_column))
        node = self.graph.get_node(node_id)
        return PathStep(
            node_id=node.id,
            node_name=node.name,
            node_type=node.type,
            column_name=column,
            transformation=column_edge.transformation,
            expression=column_edge.expression,
        )

    def _origin_step(self, column_edge: ColumnEdge) -> PathStep:
        node = self.graph.get_node(column_edge.source_node_id)
        return PathStep(node.id, node.name, node.type, column_name=column_edge.source_column,
                        transformation=Transformation.SOURCE, expression=column_edge.expression)


def describe_paths(paths: List[LineagePath], limit: Optional[int] = None) -> List[str]:
    """Human readable chains, e.g. for CLI output."""
    selected = paths if limit is None else paths[:limit]
    return [path.describe() for path in selected]
