# -*- coding: utf-8 -*-
"""
Request/response commands for UI clients.

``MessageHandler.handle`` takes a mapping with a ``command`` key and returns
``{"command": ..., "data": ...}`` on success or ``{"command": ..., "error": ...}``
for unknown commands and unexpected failures. Lookups that find nothing are
normal results carrying an ``error`` field inside ``data``. Every request runs
against the snapshot that was current when it arrived.
"""
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from sql_lineage import config
from sql_lineage.column_lineage import ColumnLineageResolver
from sql_lineage.flow import FlowAnalyzer
from sql_lineage.graph import LineageGraph
from sql_lineage.impact import ImpactAnalyzer, find_similar_names
from sql_lineage.models import ChangeType, Direction, NodeType
from sql_lineage.scheduler import SnapshotStore
from sql_lineage.settings import ConfigManager
from sql_lineage.utils import normalize_depth

logger = logging.getLogger('sql_lineage.protocol')

SEARCH_LIMIT = 15
_FILE_NODE_TYPES = (NodeType.TABLE, NodeType.VIEW, NodeType.CTE)


class MessageHandler:
    def __init__(self, source: Union[SnapshotStore, LineageGraph], cfg: Optional[ConfigManager] = None):
        self.source = source
        self.config = cfg
        self.default_depth = cfg.default_depth if cfg is not None else config.DEFAULT_LINEAGE_DEPTH
        self._handlers: Dict[str, Callable[[LineageGraph, Mapping[str, Any]], Dict[str, Any]]] = {
            'getUpstream': self._get_upstream,
            'getDownstream': self._get_downstream,
            'getLineageGraph': self._get_lineage_graph,
            'selectColumn': self._select_column,
            'analyzeImpact': self._analyze_impact,
            'exploreTable': self._explore_table,
            'searchLineageTables': self._search_tables,
        }

    @property
    def commands(self) -> List[str]:
        return list(self._handlers)

    def handle(self, message: Mapping[str, Any]) -> Dict[str, Any]:
        command = message.get('command') if isinstance(message, Mapping) else None
        handler = self._handlers.get(command)
        if handler is None:
            return {'command': command, 'error': f"Unknown command: {command}"}

        graph = self._snapshot()
        try:
            data = handler(graph, message)
        except Exception as e:
            logger.error(f"Command '{command}' failed: {e}", exc_info=True)
            return {'command': command, 'error': str(e)}
        return {'command': command, 'data': data}

    def _snapshot(self) -> LineageGraph:
        if isinstance(self.source, SnapshotStore):
            return self.source.graph
        return self.source

    def _depth(self, message: Mapping[str, Any]) -> int:
        return normalize_depth(message.get('depth'), self.default_depth)

    # --- flow ---------------------------------------------------------------

    def _get_upstream(self, graph: LineageGraph, message: Mapping[str, Any]) -> Dict[str, Any]:
        return self._flow(graph, message, Direction.UPSTREAM)

    def _get_downstream(self, graph: LineageGraph, message: Mapping[str, Any]) -> Dict[str, Any]:
        return self._flow(graph, message, Direction.DOWNSTREAM)

    def _flow(self, graph: LineageGraph, message: Mapping[str, Any], direction: Direction) -> Dict[str, Any]:
        node_id = message.get('nodeId')
        file_path = message.get('filePath')
        if message.get('nodeType') == 'file' and file_path:
            root_ids = [node.id for node in graph.nodes_for_file(self._file_key(file_path))
                        if node.type in _FILE_NODE_TYPES]
        else:
            root_ids = [node_id] if node_id else []

        depth = self._depth(message)
        flow = FlowAnalyzer(graph, self.default_depth)
        exclude_external = bool(message.get('excludeExternal', False))
        nodes: Dict[str, Dict[str, Any]] = {}
        paths = []
        max_depth = 0
        for root_id in root_ids:
            result = (flow.get_upstream(root_id, depth, exclude_external) if direction == Direction.UPSTREAM
                      else flow.get_downstream(root_id, depth, exclude_external))
            for node in result.nodes:
                if node.id not in nodes:
                    nodes[node.id] = dict(node.to_dict(), depth=result.depths[node.id])
            paths.extend(path.to_dict() for path in result.paths)
            max_depth = max(max_depth, result.depth)

        return {
            'nodeId': node_id or file_path,
            'direction': direction.value,
            'nodes': list(nodes.values()),
            'paths': paths,
            'depth': max_depth,
        }

    def _file_key(self, file_path: str) -> str:
        path = Path(file_path)
        if path.is_absolute() and self.config is not None:
            models_dir = self.config.sql_models_dir
            for candidate, base in ((path, models_dir), (path.resolve(), models_dir.resolve())):
                try:
                    return candidate.relative_to(base).as_posix()
                except ValueError:
                    continue
        return path.as_posix()

    def _get_lineage_graph(self, graph: LineageGraph, message: Mapping[str, Any]) -> Dict[str, Any]:
        node_id = message.get('nodeId')
        direction = Direction(message.get('direction') or Direction.BOTH.value)
        depth = self._depth(message)
        if not graph.has_node(node_id):
            return {'nodeId': node_id, 'error': f"Node '{node_id}' not found in lineage graph"}

        result = FlowAnalyzer(graph, self.default_depth).get_lineage(node_id, direction, depth)
        data = graph.subgraph([node_id] + result.node_ids, message.get('expandedNodes') or ())
        data.update({'nodeId': node_id, 'direction': direction.value, 'depth': depth})
        return data

    # --- columns and impact -------------------------------------------------

    def _select_column(self, graph: LineageGraph, message: Mapping[str, Any]) -> Dict[str, Any]:
        max_paths = self.config.max_column_paths if self.config is not None else config.MAX_COLUMN_PATHS
        resolver = ColumnLineageResolver(graph, self.default_depth, max_paths)
        result = resolver.resolve(message.get('tableId'), message.get('columnName'), message.get('depth'))
        return result.to_dict()

    def _analyze_impact(self, graph: LineageGraph, message: Mapping[str, Any]) -> Dict[str, Any]:
        target_type = message.get('type') or 'table'
        name = message.get('name') or ''
        try:
            change_type = ChangeType(message.get('changeType') or ChangeType.MODIFY.value)
        except ValueError:
            return {'error': f"Unknown change type: {message.get('changeType')}"}

        if self.config is not None:
            analyzer = ImpactAnalyzer(graph, self.config.impact_max_depth, self.config.severity_bands)
        else:
            analyzer = ImpactAnalyzer(graph)
        if target_type == 'column' and message.get('tableName'):
            return analyzer.analyze_column(message['tableName'], name, change_type).to_dict()
        return analyzer.analyze(target_type, name, change_type).to_dict()

    # --- exploration --------------------------------------------------------

    def _explore_table(self, graph: LineageGraph, message: Mapping[str, Any]) -> Dict[str, Any]:
        table_name = message.get('tableName') or ''
        node = graph.get_node(message.get('nodeId')) if message.get('nodeId') else None
        if node is None:
            matches = graph.find_nodes(table_name, (NodeType.TABLE, NodeType.VIEW, NodeType.CTE, NodeType.EXTERNAL))
            node = matches[0] if matches else None

        if node is None:
            suggestions = find_similar_names(graph, table_name)
            error = f'Table "{table_name}" not found in the lineage graph.'
            if suggestions:
                error += f" Did you mean: {', '.join(f'{name!r}' for name in suggestions)}?"
            else:
                error += ' Make sure the table exists in your SQL files and the workspace index is up to date.'
            return {'error': error, 'suggestions': suggestions}

        flow = FlowAnalyzer(graph, self.default_depth)
        upstream = flow.get_upstream(node.id)
        downstream = flow.get_downstream(node.id)
        return {
            'table': node.to_dict(),
            'columns': [
                {'id': column.id, 'name': column.name, 'dataType': column.metadata.get('data_type')}
                for column in graph.columns_of(node.id)
            ],
            'upstream': [_neighbor(graph, edge.source_id, edge) for edge in graph.incoming_edges(node.id)],
            'downstream': [_neighbor(graph, edge.target_id, edge) for edge in graph.outgoing_edges(node.id)],
            'upstreamCount': len(upstream.nodes),
            'downstreamCount': len(downstream.nodes),
            'statements': len(graph.statements_reading([node.id])),
        }

    def _search_tables(self, graph: LineageGraph, message: Mapping[str, Any]) -> Dict[str, Any]:
        query = (message.get('query') or '').lower()
        type_filter = message.get('typeFilter')
        results = []
        for node in graph.structural_nodes():
            if node.type == NodeType.EXTERNAL:
                continue
            if type_filter and type_filter != 'all' and node.type.value != type_filter:
                continue
            if query in node.name.lower():
                results.append({'id': node.id, 'name': node.name, 'type': node.type.value, 'filePath': node.file_path})

        results.sort(key=lambda item: (item['name'].lower() != query, item['name']))
        return {'results': results[:SEARCH_LIMIT]}


def _neighbor(graph: LineageGraph, node_id: str, edge) -> Dict[str, Any]:
    node = graph.get_node(node_id)
    return {
        'id': node.id,
        'name': node.name,
        'type': node.type.value,
        'edgeType': edge.type.value,
        'referenceType': edge.metadata.get('reference_type'),
        'joinType': edge.metadata.get('join_type'),
        'filePath': edge.file_path,
    }
