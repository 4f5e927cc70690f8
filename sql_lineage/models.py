# -*- coding: utf-8 -*-
"""Shared data model for lineage graphs and the results computed over them."""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple


class NodeType(str, Enum):
    """Kind of entity a lineage node stands for."""

    TABLE = "table"
    VIEW = "view"
    CTE = "cte"
    EXTERNAL = "external"
    COLUMN = "column"


STRUCTURAL_NODE_TYPES = (NodeType.TABLE, NodeType.VIEW, NodeType.CTE, NodeType.EXTERNAL)


class EdgeType(str, Enum):
    """How directly a target reads its source."""

    DIRECT = "direct"
    DERIVED = "derived"


class Transformation(str, Enum):
    """How a target column is derived from a source column."""

    SOURCE = "source"
    PASSTHROUGH = "passthrough"
    RENAMED = "renamed"
    AGGREGATED = "aggregated"
    CALCULATED = "calculated"
    JOINED = "joined"


class ChangeType(str, Enum):
    MODIFY = "modify"
    DROP = "drop"
    RENAME = "rename"


class Direction(str, Enum):
    UPSTREAM = "upstream"
    DOWNSTREAM = "downstream"
    BOTH = "both"


class Severity(str, Enum):
    """Ordinal impact classification. Comparisons follow rank, not spelling."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def __lt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2, Severity.CRITICAL: 3}


@dataclass(frozen=True)
class LineageNode:
    id: str
    type: NodeType
    name: str
    metadata: Mapping[str, Any] = field(default_factory=dict, compare=False)
    parent_id: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'metadata', MappingProxyType(dict(self.metadata)))

    @property
    def file_path(self) -> Optional[str]:
        return self.metadata.get('file_path')

    @property
    def line_number(self) -> Optional[int]:
        return self.metadata.get('line_number')

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type.value,
            'name': self.name,
            'parentId': self.parent_id,
            'filePath': self.file_path,
            'lineNumber': self.line_number,
            'metadata': dict(self.metadata),
        }


@dataclass(frozen=True)
class LineageEdge:
    """Structural dependency: ``target_id`` depends on ``source_id``."""

    id: str
    source_id: str
    target_id: str
    type: EdgeType = EdgeType.DIRECT
    metadata: Mapping[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        object.__setattr__(self, 'metadata', MappingProxyType(dict(self.metadata)))

    @property
    def file_path(self) -> Optional[str]:
        return self.metadata.get('file_path')

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'sourceId': self.source_id,
            'targetId': self.target_id,
            'type': self.type.value,
            'metadata': dict(self.metadata),
        }


@dataclass(frozen=True)
class ColumnEdge:
    """Column data flow: ``target_column`` of ``target_node_id`` derives from ``source_column``."""

    source_node_id: str
    source_column: str
    target_node_id: str
    target_column: str
    transformation: Transformation
    expression: Optional[str] = None
    file_path: Optional[str] = None
    statement_index: Optional[int] = None

    @property
    def key(self) -> Tuple[str, str, str, str, str]:
        return (self.source_node_id, self.source_column, self.target_node_id, self.target_column,
                self.transformation.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sourceNodeId': self.source_node_id,
            'sourceColumn': self.source_column,
            'targetNodeId': self.target_node_id,
            'targetColumn': self.target_column,
            'transformation': self.transformation.value,
            'expression': self.expression,
            'filePath': self.file_path,
            'statementIndex': self.statement_index,
        }


@dataclass(frozen=True)
class StatementRecord:
    """One parsed statement and the structural nodes it reads and writes."""

    file_path: str
    index: int
    kind: str
    line_number: Optional[int] = None
    reads: Tuple[str, ...] = ()
    writes: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'filePath': self.file_path,
            'index': self.index,
            'kind': self.kind,
            'lineNumber': self.line_number,
            'reads': list(self.reads),
            'writes': list(self.writes),
        }


@dataclass(frozen=True)
class FileDiagnostic:
    """A soft error attached to one file; the rest of the workspace still builds."""

    file_path: str
    message: str
    line_number: Optional[int] = None
    severity: str = "error"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'filePath': self.file_path,
            'message': self.message,
            'lineNumber': self.line_number,
            'severity': self.severity,
        }


@dataclass(frozen=True)
class PathStep:
    node_id: str
    node_name: str
    node_type: NodeType
    column_name: Optional[str] = None
    transformation: Optional[Transformation] = None
    expression: Optional[str] = None
    edge_type: Optional[EdgeType] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'nodeId': self.node_id,
            'nodeName': self.node_name,
            'nodeType': self.node_type.value,
            'columnName': self.column_name,
            'transformation': self.transformation.value if self.transformation else None,
            'expression': self.expression,
            'edgeType': self.edge_type.value if self.edge_type else None,
        }


@dataclass(frozen=True)
class LineagePath:
    """Ordered steps from the queried node to a reached node."""

    steps: Tuple[PathStep, ...]

    @property
    def depth(self) -> int:
        return max(len(self.steps) - 1, 0)

    @property
    def end(self) -> PathStep:
        return self.steps[-1]

    @property
    def node_ids(self) -> List[str]:
        return [step.node_id for step in self.steps]

    @property
    def signature(self) -> Tuple[Tuple[str, Optional[str]], ...]:
        return tuple((step.node_id, step.column_name) for step in self.steps)

    def describe(self) -> str:
        """Human readable chain, e.g. ``orders.total -> SUM(total) -> daily_orders.total_revenue``."""
        parts = []
        for step in self.steps:
            if step.expression and step.transformation not in (None, Transformation.PASSTHROUGH):
                parts.append(step.expression)
            label = step.node_name if step.column_name is None else f"{step.node_name}.{step.column_name}"
            parts.append(label)
        return " -> ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'steps': [step.to_dict() for step in self.steps],
            'depth': self.depth,
        }


@dataclass
class FlowResult:
    root_id: str
    direction: Direction
    nodes: List[LineageNode] = field(default_factory=list)
    paths: List[LineagePath] = field(default_factory=list)
    depths: Dict[str, int] = field(default_factory=dict)
    edges: List[LineageEdge] = field(default_factory=list)

    @property
    def node_ids(self) -> List[str]:
        return [node.id for node in self.nodes]

    @property
    def depth(self) -> int:
        return max(self.depths.values(), default=0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'nodeId': self.root_id,
            'direction': self.direction.value,
            'nodes': [dict(node.to_dict(), depth=self.depths.get(node.id)) for node in self.nodes],
            'paths': [path.to_dict() for path in self.paths],
            'depth': self.depth,
        }


@dataclass
class ColumnLineageResult:
    node_id: str
    column_name: str
    upstream: List[LineagePath] = field(default_factory=list)
    downstream: List[LineagePath] = field(default_factory=list)
    warning: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.warning is None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'tableId': self.node_id,
            'columnName': self.column_name,
            'upstream': [path.to_dict() for path in self.upstream],
            'downstream': [path.to_dict() for path in self.downstream],
        }
        if self.warning:
            data['warning'] = self.warning
        return data


@dataclass(frozen=True)
class ImpactTarget:
    type: str
    name: str
    node_id: Optional[str] = None
    table_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type, 'name': self.name, 'nodeId': self.node_id, 'tableName': self.table_name}


@dataclass
class ImpactItem:
    node: LineageNode
    impact_type: str
    depth: int
    reason: str
    severity: Severity
    file_path: Optional[str] = None
    line_number: Optional[int] = None
    column_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.node.id,
            'name': self.node.name,
            'type': self.node.type.value,
            'columnName': self.column_name,
            'impactType': self.impact_type,
            'depth': self.depth,
            'reason': self.reason,
            'severity': self.severity.value,
            'filePath': self.file_path,
            'lineNumber': self.line_number,
        }


@dataclass
class ImpactSummary:
    total_affected: int = 0
    tables_affected: int = 0
    views_affected: int = 0
    ctes_affected: int = 0
    external_affected: int = 0
    queries_affected: int = 0
    files_affected: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            'totalAffected': self.total_affected,
            'tablesAffected': self.tables_affected,
            'viewsAffected': self.views_affected,
            'ctesAffected': self.ctes_affected,
            'externalAffected': self.external_affected,
            'queriesAffected': self.queries_affected,
            'filesAffected': self.files_affected,
        }


@dataclass
class ImpactReport:
    change_type: ChangeType
    target: ImpactTarget
    direct_impacts: List[ImpactItem] = field(default_factory=list)
    transitive_impacts: List[ImpactItem] = field(default_factory=list)
    summary: ImpactSummary = field(default_factory=ImpactSummary)
    severity: Severity = Severity.LOW
    suggestions: List[str] = field(default_factory=list)

    @property
    def transitive_by_depth(self) -> Dict[int, List[ImpactItem]]:
        grouped: Dict[int, List[ImpactItem]] = {}
        for item in self.transitive_impacts:
            grouped.setdefault(item.depth, []).append(item)
        return dict(sorted(grouped.items()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'changeType': self.change_type.value,
            'target': self.target.to_dict(),
            'severity': self.severity.value,
            'summary': self.summary.to_dict(),
            'directImpacts': [item.to_dict() for item in self.direct_impacts],
            'transitiveImpacts': [item.to_dict() for item in self.transitive_impacts],
            'transitiveByDepth': {
                str(depth): [item.to_dict() for item in items]
                for depth, items in self.transitive_by_depth.items()
            },
            'suggestions': list(self.suggestions),
        }


@dataclass
class ImpactNotFound:
    """Typed result for an impact request whose target is not in the graph."""

    target_type: str
    name: str
    change_type: ChangeType
    error: str
    suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error': self.error,
            'target': {'type': self.target_type, 'name': self.name},
            'changeType': self.change_type.value,
            'suggestions': list(self.suggestions),
        }
