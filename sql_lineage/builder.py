# -*- coding: utf-8 -*-
"""
Turns per-file statements into LineageGraph snapshots.

Both full and incremental builds re-link the whole workspace from the per-file
statement sets held in BuildState. Nothing is patched in place: replacing or
removing a file's statements and linking again is what guarantees that no edge
attributed to an old version of the file survives, and that references whose
resolution changed elsewhere are resolved again.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sql_lineage.graph import LineageGraph
from sql_lineage.models import (
    ColumnEdge,
    EdgeType,
    FileDiagnostic,
    LineageEdge,
    LineageNode,
    NodeType,
    StatementRecord,
    Transformation,
)
from sql_lineage.parser import ParsedFile, SourceDefinition
from sql_lineage.settings import ConfigManager
from sql_lineage.statements import (
    AnyStatement,
    ColumnSource,
    CreateStatement,
    CteDefinition,
    DeleteStatement,
    InsertStatement,
    OutputColumn,
    QueryScope,
    RelationRef,
    SelectStatement,
    UpdateStatement,
    finalize_transformation,
)
from sql_lineage.utils import NameUtils


@dataclass(frozen=True)
class BuildState:
    """Everything needed to re-link the workspace: statements and diagnostics per file, plus sources."""
    files: Mapping[str, Tuple[AnyStatement, ...]] = field(default_factory=dict)
    sources: Tuple[SourceDefinition, ...] = ()
    diagnostics: Mapping[str, Tuple[FileDiagnostic, ...]] = field(default_factory=dict)

    @classmethod
    def from_files(cls, parsed_files: Iterable[ParsedFile], sources: Iterable[SourceDefinition] = ()) -> 'BuildState':
        return cls().with_changes(parsed_files, (), sources)

    def with_changes(self, changed_files: Iterable[ParsedFile], removed_paths: Iterable[str] = (),
                     sources: Optional[Iterable[SourceDefinition]] = None) -> 'BuildState':
        files = dict(self.files)
        diagnostics = dict(self.diagnostics)
        for path in removed_paths:
            files.pop(path, None)
            diagnostics.pop(path, None)
        for parsed in changed_files:
            files[parsed.file_path] = tuple(parsed.statements)
            diagnostics[parsed.file_path] = tuple(parsed.diagnostics)
        return BuildState(
            files=files,
            sources=self.sources if sources is None else tuple(sources),
            diagnostics={path: diags for path, diags in diagnostics.items() if diags},
        )

    @property
    def all_diagnostics(self) -> List[FileDiagnostic]:
        return [diag for path in sorted(self.diagnostics) for diag in self.diagnostics[path]]


@dataclass(frozen=True)
class BuildResult:
    graph: LineageGraph
    state: BuildState
    diagnostics: Tuple[FileDiagnostic, ...] = ()


@dataclass
class _Definition:
    node_type: NodeType
    name: str
    schema: Optional[str]
    files: List[str] = field(default_factory=list)
    line_number: Optional[int] = None
    columns: List[Tuple[str, Optional[str]]] = field(default_factory=list)
    names: type = field(default=NameUtils, repr=False)

    @property
    def node_id(self) -> str:
        return self.names.format_node_id(self.node_type.value, self.name, self.schema)


@dataclass
class _ColumnFlow:
    target_id: str
    target_column: str
    output: OutputColumn
    file_path: str
    index: int
    allow_self: bool = False


@dataclass
class _StarFlow:
    target_id: str
    source_ids: List[str]
    expression: Optional[str]
    file_path: str
    index: int


class GraphBuilder:
    """Builds immutable LineageGraph snapshots from parsed files."""

    def __init__(self, cfg: ConfigManager):
        self.config = cfg
        self.names = NameUtils.with_normalization(cfg.normalize_names)
        self.logger = logging.getLogger('sql_lineage.builder')

    def build(self, parsed_files: Iterable[ParsedFile], sources: Iterable[SourceDefinition] = (),
              token=None) -> BuildResult:
        """Full build from every file of the workspace."""
        state = BuildState.from_files(parsed_files, sources)
        return self._link(state, token)

    def rebuild(self, previous_state: BuildState, changed_files: Iterable[ParsedFile] = (),
                removed_paths: Iterable[str] = (), token=None,
                sources: Optional[Iterable[SourceDefinition]] = None) -> BuildResult:
        """Incremental build: replaces the statements of changed files and drops removed ones."""
        changed_files = list(changed_files)
        removed_paths = list(removed_paths)
        self.logger.info(f"Rebuilding lineage: {len(changed_files)} changed, {len(removed_paths)} removed files.")
        state = previous_state.with_changes(changed_files, removed_paths, sources)
        return self._link(state, token)

    def _link(self, state: BuildState, token) -> BuildResult:
        linker = _Linker(state, self.config.sql_dialect, self.names)
        for file_path in sorted(state.files):
            if token is not None:
                token.raise_if_cancelled()
            for index, statement in enumerate(state.files[file_path]):
                linker.link_statement(file_path, index, statement)

        graph = linker.finish()
        if token is not None:
            token.raise_if_cancelled()

        diagnostics = tuple(state.all_diagnostics)
        stats = graph.stats()
        self.logger.info(
            f"Graph built. Nodes: {len(graph.nodes)}, Edges: {stats['edges']}, "
            f"Column edges: {stats['column_edges']}, Diagnostics: {len(diagnostics)}."
        )
        return BuildResult(graph=graph, state=state, diagnostics=diagnostics)


class _Linker:
    """Accumulates the nodes and edges of one build. Never shared between builds."""

    def __init__(self, state: BuildState, dialect: Optional[str] = None, names: type = NameUtils):
        self.dialect = dialect
        self.names = names
        self.state = state
        self.definitions: Dict[str, _Definition] = {}
        self.nodes: Dict[str, dict] = {}
        self.edges: Dict[str, LineageEdge] = {}
        self.statements: List[StatementRecord] = []
        self.known_columns: Dict[str, Dict[str, Optional[str]]] = {}
        self.column_flows: List[_ColumnFlow] = []
        self.star_flows: List[_StarFlow] = []
        self.column_edges: Dict[tuple, ColumnEdge] = {}
        self._collect_definitions()

    # --- definitions --------------------------------------------------------

    def _collect_definitions(self):
        for source in self.state.sources:
            definition = self._define(NodeType.TABLE, source.name, source.schema)
            definition.columns.extend(source.columns)

        for file_path in sorted(self.state.files):
            for statement in self.state.files[file_path]:
                if isinstance(statement, CreateStatement) and statement.target is not None:
                    node_type = NodeType.VIEW if statement.object_type == 'view' else NodeType.TABLE
                    target = statement.target
                    definition = self._define(node_type, target.name, target.schema)
                    if file_path not in definition.files:
                        definition.files.append(file_path)
                    if definition.line_number is None:
                        definition.line_number = statement.line_number
                    for column in statement.columns:
                        if column[0].lower() not in {name.lower() for name, _ in definition.columns}:
                            definition.columns.append(column)

        # Tables only ever populated by INSERT still belong to the workspace
        for file_path in sorted(self.state.files):
            for statement in self.state.files[file_path]:
                if isinstance(statement, InsertStatement) and statement.target is not None:
                    if self._resolve_definition(statement.target.name, statement.target.schema) is None:
                        self._define(NodeType.TABLE, statement.target.name, statement.target.schema)

        for source in self.state.sources:
            definition = self.definitions[self.names.qualified_key(source.name, source.schema)]
            self._touch(definition.node_id, definition.node_type, definition.name, definition.schema,
                        file_path=definition.files[0] if definition.files else None,
                        line_number=definition.line_number)
            self.nodes[definition.node_id]['declared_in_sources'] = True

    def _define(self, node_type: NodeType, name: str, schema: Optional[str]) -> _Definition:
        key = self.names.qualified_key(name, schema)
        definition = self.definitions.get(key)
        if definition is None:
            definition = _Definition(node_type, name, schema, names=self.names)
            self.definitions[key] = definition
        elif node_type == NodeType.VIEW:
            definition.node_type = NodeType.VIEW
        return definition

    def _resolve_definition(self, name: str, schema: Optional[str]) -> Optional[_Definition]:
        key = self.names.qualified_key(name, schema)
        if key in self.definitions:
            return self.definitions[key]
        if schema:
            return self.definitions.get(self.names.qualified_key(name))
        name_key = self.names.normalize_name(name)
        candidates = [d for d in self.definitions.values() if self.names.normalize_name(d.name) == name_key]
        return candidates[0] if len(candidates) == 1 else None

    def resolve(self, relation: RelationRef, file_path: str, index: int, line_number: Optional[int] = None) -> str:
        """
        Node id a relation reference points to, creating the node on first sight.
        CTE references resolve to the CTE of the statement at ``index`` in ``file_path``.
        """
        if relation.kind == 'cte':
            node_id = self.names.format_cte_id(relation.name, file_path, index)
            self._touch(node_id, NodeType.CTE, relation.name, None)
            return node_id

        definition = self._resolve_definition(relation.name, relation.schema)
        if definition is not None:
            node_id = definition.node_id
            self._touch(node_id, definition.node_type, definition.name, definition.schema,
                        file_path=definition.files[0] if definition.files else None,
                        line_number=definition.line_number)
            for file in definition.files:
                self._add_file(node_id, file)
            return node_id

        node_id = self.names.format_node_id(NodeType.EXTERNAL.value, relation.name, relation.schema)
        node = self._touch(node_id, NodeType.EXTERNAL, relation.name, relation.schema)
        node['is_external'] = True
        referenced = node.setdefault('referenced_in', [])
        if file_path not in referenced:
            referenced.append(file_path)
        if node.get('line_number') is None:
            node['line_number'] = line_number or relation.line_number
            node['file_path'] = file_path
        return node_id

    def _touch(self, node_id: str, node_type: NodeType, name: str, schema: Optional[str],
               file_path: Optional[str] = None, line_number: Optional[int] = None) -> dict:
        node = self.nodes.get(node_id)
        if node is None:
            node = {
                'type': node_type,
                'name': self.names.normalize_name(name),
                'qualified_name': self.names.qualified_key(name, schema),
                'schema': self.names.normalize_name(schema) if schema else None,
                'file_path': file_path,
                'line_number': line_number,
                'definition_files': [],
                'is_external': node_type == NodeType.EXTERNAL,
            }
            self.nodes[node_id] = node
            self.known_columns.setdefault(node_id, {})
        return node

    def _add_file(self, node_id: str, file_path: str):
        files = self.nodes[node_id]['definition_files']
        if file_path not in files:
            files.append(file_path)

    # --- statements ---------------------------------------------------------

    def link_statement(self, file_path: str, index: int, statement: AnyStatement):
        reads: List[str] = []
        writes: List[str] = []

        for cte in statement.ctes:
            writes.append(self._link_cte(cte, file_path, index, reads))

        if isinstance(statement, CreateStatement) and statement.target is not None:
            target_id = self._link_target(statement.target, file_path, index, statement.line_number)
            writes.append(target_id)
            self._declare_columns(target_id, statement.columns)
            if statement.query is not None:
                declared = [name for name, _ in statement.columns]
                self._link_query(statement.query, target_id, file_path, index, reads, declared)
        elif isinstance(statement, InsertStatement) and statement.target is not None:
            target_id = self._link_target(statement.target, file_path, index, statement.line_number)
            writes.append(target_id)
            if statement.query is not None:
                names = statement.target_columns or self._declared_names(target_id)
                self._link_query(statement.query, target_id, file_path, index, reads, names,
                                 explicit=bool(statement.target_columns))
            for column in statement.target_columns:
                self._know(target_id, column)
        elif isinstance(statement, UpdateStatement) and statement.target is not None:
            target_id = self.resolve(statement.target, file_path, index, statement.line_number)
            writes.append(target_id)
            for relation in statement.relations + statement.derived_reads:
                reads.append(self._link_read(relation, target_id, file_path, index))
            for assignment in statement.assignments:
                self._know(target_id, assignment.name)
                self.column_flows.append(_ColumnFlow(target_id, assignment.name, assignment, file_path, index))
        elif isinstance(statement, DeleteStatement) and statement.target is not None:
            target_id = self.resolve(statement.target, file_path, index, statement.line_number)
            writes.append(target_id)
            for relation in statement.relations + statement.derived_reads:
                reads.append(self._link_read(relation, target_id, file_path, index))
        elif isinstance(statement, SelectStatement):
            for relation in statement.query.reads:
                reads.append(self.resolve(relation, file_path, index))

        self.statements.append(StatementRecord(
            file_path=file_path,
            index=index,
            kind=statement.kind,
            line_number=statement.line_number,
            reads=tuple(dict.fromkeys(reads)),
            writes=tuple(dict.fromkeys(writes)),
        ))

    def _link_cte(self, cte: CteDefinition, file_path: str, index: int, reads: List[str]) -> str:
        cte_id = self.names.format_cte_id(cte.name, file_path, index)
        node = self._touch(cte_id, NodeType.CTE, cte.name, None, file_path=file_path, line_number=cte.line_number)
        if node.get('file_path') is None:
            node['file_path'] = file_path
            node['line_number'] = cte.line_number
        if cte.recursive:
            node['recursive'] = True
        self._add_file(cte_id, file_path)
        self._declare_columns(cte_id, [(name, None) for name in cte.columns])
        self._link_query(cte.query, cte_id, file_path, index, reads, cte.columns, recursive=cte.recursive)
        return cte_id

    def _link_target(self, target: RelationRef, file_path: str, index: int, line_number: Optional[int]) -> str:
        target_id = self.resolve(target, file_path, index, line_number)
        self._add_file(target_id, file_path)
        return target_id

    def _link_query(self, query: QueryScope, target_id: str, file_path: str, index: int, reads: List[str],
                    target_names: Sequence[str] = (), explicit: bool = False, recursive: bool = False):
        for relation in query.reads:
            reads.append(self._link_read(relation, target_id, file_path, index, recursive=recursive))

        outputs = [out for out in query.outputs if not out.is_star]
        stars = [out for out in query.outputs if out.is_star]
        positional = len(target_names) == len(outputs) and (explicit or not stars) and bool(target_names)
        for position, output in enumerate(outputs):
            target_column = target_names[position] if positional else output.name
            self._know(target_id, target_column)
            self.column_flows.append(_ColumnFlow(target_id, target_column, output, file_path, index,
                                                 allow_self=recursive))

        if explicit and not positional:
            return
        for star in stars:
            source_ids = [self.resolve(relation, file_path, index) for relation in star.star_relations]
            self.star_flows.append(_StarFlow(target_id, source_ids, star.expression, file_path, index))

    def _link_read(self, relation: RelationRef, target_id: str, file_path: str, index: int,
                   recursive: bool = False) -> str:
        source_id = self.resolve(relation, file_path, index)
        if source_id == target_id and not (recursive and relation.kind == 'cte'):
            return source_id

        edge_type = EdgeType.DERIVED if relation.role == 'subquery' or source_id == target_id else EdgeType.DIRECT
        metadata = {
            'file_path': file_path,
            'statement_index': index,
            'reference_type': 'cte' if relation.kind == 'cte' and relation.role != 'subquery' else relation.role,
        }
        if relation.join_type:
            metadata['join_type'] = relation.join_type
            metadata['join_condition'] = relation.join_condition
        if source_id == target_id:
            metadata['recursive'] = True

        edge_id = f"{source_id}->{target_id}@{file_path}#{index}"
        existing = self.edges.get(edge_id)
        if existing is None or (existing.type == EdgeType.DERIVED and edge_type == EdgeType.DIRECT):
            self.edges[edge_id] = LineageEdge(edge_id, source_id, target_id, edge_type, metadata)
        return source_id

    # --- columns ------------------------------------------------------------

    def _declared_names(self, node_id: str) -> List[str]:
        node = self.nodes.get(node_id)
        if node is None:
            return []
        definition = self.definitions.get(node['qualified_name'])
        return [name for name, _ in definition.columns] if definition else []

    def _declare_columns(self, node_id: str, columns: Iterable[Tuple[str, Optional[str]]]):
        for name, data_type in columns:
            self._know(node_id, name, data_type)

    def _know(self, node_id: str, column: str, data_type: Optional[str] = None) -> bool:
        columns = self.known_columns.setdefault(node_id, {})
        key = self.names.normalize_name(column)
        if key in columns:
            if data_type and not columns[key]:
                columns[key] = data_type
            return False
        columns[key] = data_type
        return True

    def _source_node(self, source: ColumnSource, file_path: str, index: int) -> Optional[str]:
        if source.relation is not None:
            return self.resolve(source.relation, file_path, index)
        if not source.candidates:
            return None
        candidate_ids = [self.resolve(relation, file_path, index) for relation in source.candidates]
        column_key = self.names.normalize_name(source.column)
        for candidate_id in candidate_ids:
            if column_key in self.known_columns.get(candidate_id, {}):
                return candidate_id
        return candidate_ids[0]

    def _expand_stars(self):
        changed = True
        while changed:
            changed = False
            for flow in self.star_flows:
                for source_id in flow.source_ids:
                    if source_id == flow.target_id:
                        continue
                    for column in list(self.known_columns.get(source_id, {})):
                        if self._know(flow.target_id, column):
                            changed = True

    def _link_columns(self):
        for definition in self.definitions.values():
            if definition.node_id in self.nodes:
                self._declare_columns(definition.node_id, definition.columns)

        # Qualified references first so that unqualified ones can be matched against them
        for flow in self.column_flows:
            for source in flow.output.sources:
                if source.relation is not None:
                    self._know(self._source_node(source, flow.file_path, flow.index), source.column)
        self._expand_stars()

        for flow in self.column_flows:
            target_column = self.names.normalize_name(flow.target_column)
            if not flow.output.sources:
                self._add_column_edge(ColumnEdge(flow.target_id, target_column, flow.target_id, target_column,
                                                 Transformation.SOURCE, flow.output.expression, flow.file_path,
                                                 flow.index))
                continue
            for source in flow.output.sources:
                source_id = self._source_node(source, flow.file_path, flow.index)
                if source_id is None:
                    continue
                source_column = self.names.normalize_name(source.column)
                if source_id == flow.target_id and not flow.allow_self:
                    continue
                self._know(source_id, source.column)
                transformation = finalize_transformation(flow.output.transformation, source, target_column)
                expression = None
                if transformation != Transformation.PASSTHROUGH:
                    expression = source.expression if source.transformation and source.expression else flow.output.expression
                self._add_column_edge(ColumnEdge(source_id, source_column, flow.target_id, target_column,
                                                 transformation, expression, flow.file_path, flow.index))
        self._expand_stars()

        for flow in self.star_flows:
            for source_id in flow.source_ids:
                if source_id == flow.target_id:
                    continue
                for column in self.known_columns.get(source_id, {}):
                    self._add_column_edge(ColumnEdge(source_id, column, flow.target_id, column,
                                                     Transformation.PASSTHROUGH, None, flow.file_path, flow.index))

    def _add_column_edge(self, column_edge: ColumnEdge):
        key = column_edge.key + (column_edge.file_path, column_edge.statement_index)
        if key not in self.column_edges:
            self.column_edges[key] = column_edge

    # --- snapshot -----------------------------------------------------------

    def finish(self) -> LineageGraph:
        self._link_columns()

        nodes: List[LineageNode] = []
        column_nodes: List[LineageNode] = []
        for node_id, data in self.nodes.items():
            columns = self.known_columns.get(node_id, {})
            metadata = {key: value for key, value in data.items() if key not in ('type', 'name')}
            metadata['definition_files'] = sorted(metadata['definition_files'])
            if 'referenced_in' in metadata:
                metadata['referenced_in'] = sorted(metadata['referenced_in'])
            metadata['columns'] = list(columns)
            nodes.append(LineageNode(node_id, data['type'], data['name'], metadata))
            for column, data_type in columns.items():
                column_id = self.names.format_node_id(NodeType.COLUMN.value, column=column, owner_id=node_id)
                column_metadata = {'data_type': data_type, 'file_path': data.get('file_path'),
                                   'line_number': data.get('line_number')}
                column_nodes.append(LineageNode(column_id, NodeType.COLUMN, column, column_metadata,
                                                parent_id=node_id))

        return LineageGraph(
            nodes=nodes + column_nodes,
            edges=self.edges.values(),
            column_edges=self.column_edges.values(),
            statements=self.statements,
            diagnostics=self.state.all_diagnostics,
        )
