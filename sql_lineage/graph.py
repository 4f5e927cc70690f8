# -*- coding: utf-8 -*-
import json
import logging
from collections import defaultdict
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import networkx as nx
from networkx.readwrite import json_graph

from sql_lineage.models import (
    ColumnEdge,
    EdgeType,
    FileDiagnostic,
    LineageEdge,
    LineageNode,
    NodeType,
    STRUCTURAL_NODE_TYPES,
    StatementRecord,
    Transformation,
)
from sql_lineage.utils import NameUtils

logger = logging.getLogger('sql_lineage.graph')

STATE_VERSION = 1

# Column names on column edges are already normalized by the builder
_EXACT_NAMES = NameUtils.with_normalization(False)


class LineageGraph:
    """
    Immutable lineage snapshot.

    Nodes live in an id-keyed arena; structural edges are mirrored into a frozen
    networkx MultiDiGraph (one parallel edge per originating statement). Column
    edges, statement records and diagnostics are kept as tuples with lookup
    indexes. Edge endpoints missing from ``nodes`` are synthesized as external
    nodes so no edge ever dangles.
    """

    def __init__(self, nodes: Iterable[LineageNode] = (), edges: Iterable[LineageEdge] = (),
                 column_edges: Iterable[ColumnEdge] = (), statements: Iterable[StatementRecord] = (),
                 diagnostics: Iterable[FileDiagnostic] = ()):
        arena: Dict[str, LineageNode] = {}
        for node in nodes:
            arena[node.id] = node

        edge_list = tuple(edges)
        for edge in edge_list:
            for endpoint in (edge.source_id, edge.target_id):
                if endpoint not in arena:
                    arena[endpoint] = _synthesize_external(endpoint)

        column_edge_list = tuple(column_edges)
        for column_edge in column_edge_list:
            for owner_id, column in ((column_edge.source_node_id, column_edge.source_column),
                                     (column_edge.target_node_id, column_edge.target_column)):
                if owner_id not in arena:
                    arena[owner_id] = _synthesize_external(owner_id)
                column_id = _EXACT_NAMES.format_node_id(NodeType.COLUMN.value, column=column, owner_id=owner_id)
                if column_id not in arena:
                    arena[column_id] = LineageNode(column_id, NodeType.COLUMN, column, {}, parent_id=owner_id)

        self._nodes = MappingProxyType(arena)
        self._edges = edge_list
        self._column_edges = column_edge_list
        self._statements = tuple(statements)
        self._diagnostics = tuple(diagnostics)
        self._build_indexes()

        graph = nx.MultiDiGraph()
        for node in arena.values():
            graph.add_node(node.id, type=node.type.value, name=node.name, parent_id=node.parent_id)
        for edge in edge_list:
            graph.add_edge(edge.source_id, edge.target_id, key=edge.id, type=edge.type.value)
        self._graph = nx.freeze(graph)

    def _build_indexes(self):
        incoming = defaultdict(list)
        outgoing = defaultdict(list)
        for edge in self._edges:
            incoming[edge.target_id].append(edge)
            outgoing[edge.source_id].append(edge)

        columns_into = defaultdict(list)
        columns_from = defaultdict(list)
        for column_edge in self._column_edges:
            columns_into[(column_edge.target_node_id, column_edge.target_column.lower())].append(column_edge)
            columns_from[(column_edge.source_node_id, column_edge.source_column.lower())].append(column_edge)

        columns_of = defaultdict(list)
        by_file = defaultdict(list)
        for node in self._nodes.values():
            if node.type == NodeType.COLUMN and node.parent_id:
                columns_of[node.parent_id].append(node)
            elif node.type in STRUCTURAL_NODE_TYPES:
                for file_path in node.metadata.get('definition_files') or []:
                    by_file[file_path].append(node)

        self._incoming = {key: tuple(value) for key, value in incoming.items()}
        self._outgoing = {key: tuple(value) for key, value in outgoing.items()}
        self._columns_into = {key: tuple(value) for key, value in columns_into.items()}
        self._columns_from = {key: tuple(value) for key, value in columns_from.items()}
        self._columns_of = {key: tuple(value) for key, value in columns_of.items()}
        self._by_file = {key: tuple(value) for key, value in by_file.items()}

    # --- basic accessors ----------------------------------------------------

    @property
    def nodes(self) -> Mapping[str, LineageNode]:
        return self._nodes

    @property
    def edges(self) -> Tuple[LineageEdge, ...]:
        return self._edges

    @property
    def column_edges(self) -> Tuple[ColumnEdge, ...]:
        return self._column_edges

    @property
    def statements(self) -> Tuple[StatementRecord, ...]:
        return self._statements

    @property
    def diagnostics(self) -> Tuple[FileDiagnostic, ...]:
        return self._diagnostics

    def get_node(self, node_id: str) -> Optional[LineageNode]:
        return self._nodes.get(node_id)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def structural_nodes(self) -> List[LineageNode]:
        return [node for node in self._nodes.values() if node.type in STRUCTURAL_NODE_TYPES]

    def incoming_edges(self, node_id: str) -> Tuple[LineageEdge, ...]:
        """Edges whose target is ``node_id``: what it reads."""
        return self._incoming.get(node_id, ())

    def outgoing_edges(self, node_id: str) -> Tuple[LineageEdge, ...]:
        """Edges whose source is ``node_id``: what reads it."""
        return self._outgoing.get(node_id, ())

    def column_edges_into(self, node_id: str, column: str) -> Tuple[ColumnEdge, ...]:
        return self._columns_into.get((node_id, column.lower()), ())

    def column_edges_from(self, node_id: str, column: str) -> Tuple[ColumnEdge, ...]:
        return self._columns_from.get((node_id, column.lower()), ())

    def columns_of(self, node_id: str) -> Tuple[LineageNode, ...]:
        return self._columns_of.get(node_id, ())

    def has_column(self, node_id: str, column: str) -> bool:
        wanted = column.lower()
        if any(col.name.lower() == wanted for col in self.columns_of(node_id)):
            return True
        return bool(self.column_edges_into(node_id, column) or self.column_edges_from(node_id, column))

    def nodes_for_file(self, file_path: str) -> Tuple[LineageNode, ...]:
        """Structural nodes defined in ``file_path``."""
        return self._by_file.get(file_path, ())

    def find_nodes(self, name: str, types: Optional[Sequence[NodeType]] = None) -> List[LineageNode]:
        """
        Finds structural nodes whose name or qualified name matches ``name``
        (case-insensitively). Results follow the order of ``types`` so callers
        can prefer e.g. views over tables.
        """
        if not name:
            return []
        wanted = name.strip().lower()
        allowed = list(types) if types else list(STRUCTURAL_NODE_TYPES)
        matches = [
            node for node in self._nodes.values()
            if node.type in allowed and wanted in (node.name.lower(), str(node.metadata.get('qualified_name', '')).lower())
        ]
        return sorted(matches, key=lambda node: allowed.index(node.type))

    def statements_reading(self, node_ids: Iterable[str]) -> List[StatementRecord]:
        wanted = set(node_ids)
        return [record for record in self._statements if wanted.intersection(record.reads)]

    def to_networkx(self) -> nx.MultiDiGraph:
        """The frozen structural graph (column nodes included as isolated nodes)."""
        return self._graph

    def subgraph(self, node_ids: Iterable[str], expanded: Iterable[str] = ()) -> Dict[str, Any]:
        """
        Nodes and edges restricted to ``node_ids``. Column nodes and column
        edges are only included for nodes listed in ``expanded``.
        """
        included = [node_id for node_id in dict.fromkeys(node_ids) if node_id in self._nodes]
        included_set = set(included)
        expanded_set = {node_id for node_id in expanded if node_id in included_set}

        nodes = [self._nodes[node_id].to_dict() for node_id in included]
        for node_id in included:
            if node_id in expanded_set:
                nodes.extend(column.to_dict() for column in self.columns_of(node_id))

        edges = [edge.to_dict() for edge in self._edges
                 if edge.source_id in included_set and edge.target_id in included_set]
        column_edges = [
            column_edge.to_dict() for column_edge in self._column_edges
            if (column_edge.source_node_id in expanded_set or column_edge.target_node_id in expanded_set)
            and column_edge.source_node_id in included_set and column_edge.target_node_id in included_set
        ]
        return {'nodes': nodes, 'edges': edges, 'columnEdges': column_edges, 'expandedNodes': sorted(expanded_set)}

    def stats(self) -> Dict[str, int]:
        counts = {node_type.value: 0 for node_type in NodeType}
        for node in self._nodes.values():
            counts[node.type.value] += 1
        counts.update({
            'edges': len(self._edges),
            'column_edges': len(self._column_edges),
            'statements': len(self._statements),
            'files': len({record.file_path for record in self._statements}),
            'diagnostics': len(self._diagnostics),
        })
        return counts

    # --- persistence --------------------------------------------------------

    def save_state(self, state_file: Path):
        """Saves the snapshot as networkx node-link JSON."""
        logger.info(f"Saving graph state to {state_file}...")
        graph = nx.MultiDiGraph(
            version=STATE_VERSION,
            column_edges=[column_edge.to_dict() for column_edge in self._column_edges],
            statements=[record.to_dict() for record in self._statements],
            diagnostics=[diagnostic.to_dict() for diagnostic in self._diagnostics],
        )
        for node in self._nodes.values():
            graph.add_node(node.id, type=node.type.value, name=node.name, parent_id=node.parent_id,
                           metadata=dict(node.metadata))
        for position, edge in enumerate(self._edges):
            graph.add_edge(edge.source_id, edge.target_id, key=edge.id, type=edge.type.value,
                           metadata=dict(edge.metadata), position=position)

        state_file = Path(state_file)
        state_file.parent.mkdir(parents=True, exist_ok=True)
        graph_data = json_graph.node_link_data(graph, edges='links')
        with state_file.open('w', encoding='utf-8') as f:
            json.dump(graph_data, f, indent=2, ensure_ascii=False)
        logger.info("Graph state saved successfully.")

    @classmethod
    def load_state(cls, state_file: Path) -> Optional['LineageGraph']:
        """Loads a snapshot saved by ``save_state``. A missing or unreadable file yields None."""
        state_file = Path(state_file)
        if not state_file.exists():
            logger.info(f"State file {state_file} not found. No previous state.")
            return None

        logger.info(f"Loading graph state from {state_file}...")
        try:
            with state_file.open('r', encoding='utf-8') as f:
                data = json.load(f)
            graph = json_graph.node_link_graph(data, directed=True, multigraph=True, edges='links')
            instance = cls._from_networkx(graph)
        except (OSError, ValueError, KeyError, TypeError, nx.NetworkXError) as e:
            logger.error(f"Failed to load graph state: {e}", exc_info=True)
            return None

        logger.info(f"Graph state loaded. Nodes: {len(instance.nodes)}, Edges: {len(instance.edges)}.")
        return instance

    @classmethod
    def _from_networkx(cls, graph: nx.MultiDiGraph) -> 'LineageGraph':
        nodes = [
            LineageNode(node_id, NodeType(data['type']), data['name'], dict(data.get('metadata') or {}),
                        parent_id=data.get('parent_id'))
            for node_id, data in graph.nodes(data=True)
        ]
        raw_edges = sorted(graph.edges(keys=True, data=True), key=lambda item: item[3].get('position', 0))
        edges = [
            LineageEdge(key, source, target, EdgeType(data['type']), dict(data.get('metadata') or {}))
            for source, target, key, data in raw_edges
        ]
        column_edges = [
            ColumnEdge(
                source_node_id=item['sourceNodeId'],
                source_column=item['sourceColumn'],
                target_node_id=item['targetNodeId'],
                target_column=item['targetColumn'],
                transformation=Transformation(item['transformation']),
                expression=item.get('expression'),
                file_path=item.get('filePath'),
                statement_index=item.get('statementIndex'),
            )
            for item in graph.graph.get('column_edges', [])
        ]
        statements = [
            StatementRecord(
                file_path=item['filePath'],
                index=item['index'],
                kind=item['kind'],
                line_number=item.get('lineNumber'),
                reads=tuple(item.get('reads') or ()),
                writes=tuple(item.get('writes') or ()),
            )
            for item in graph.graph.get('statements', [])
        ]
        diagnostics = [
            FileDiagnostic(item['filePath'], item['message'], item.get('lineNumber'), item.get('severity', 'error'))
            for item in graph.graph.get('diagnostics', [])
        ]
        return cls(nodes, edges, column_edges, statements, diagnostics)


def _synthesize_external(node_id: str) -> LineageNode:
    try:
        parsed = NameUtils.parse_node_id(node_id)
        name = parsed['name'] or node_id
        qualified = f"{parsed['schema']}.{name}" if parsed['schema'] else name
    except ValueError:
        name = qualified = node_id
    return LineageNode(node_id, NodeType.EXTERNAL, name,
                       {'qualified_name': qualified, 'is_external': True, 'synthesized': True})
