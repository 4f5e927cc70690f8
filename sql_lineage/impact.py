# -*- coding: utf-8 -*-
import difflib
import logging
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

from sql_lineage import config
from sql_lineage.column_lineage import ColumnLineageResolver
from sql_lineage.flow import FlowAnalyzer
from sql_lineage.graph import LineageGraph
from sql_lineage.models import (
    ChangeType,
    ImpactItem,
    ImpactNotFound,
    ImpactReport,
    ImpactSummary,
    ImpactTarget,
    LineageNode,
    NodeType,
    Severity,
)

logger = logging.getLogger('sql_lineage.impact')

# Lookup order when a caller names an entity by type; the first match wins
_TARGET_PREFERENCE = {
    'table': (NodeType.TABLE, NodeType.VIEW, NodeType.EXTERNAL, NodeType.CTE),
    'view': (NodeType.VIEW, NodeType.TABLE, NodeType.EXTERNAL, NodeType.CTE),
    'cte': (NodeType.CTE, NodeType.TABLE, NodeType.VIEW, NodeType.EXTERNAL),
    'external': (NodeType.EXTERNAL, NodeType.TABLE, NodeType.VIEW, NodeType.CTE),
}


def find_similar_names(graph: LineageGraph, query: str, limit: int = 3) -> List[str]:
    """Node names resembling ``query``: substring matches first, then close spellings."""
    query = (query or '').lower()
    if not query:
        return []
    names = sorted({node.name for node in graph.structural_nodes()})
    substring = [name for name in names if query in name.lower() or name.lower() in query]
    close = difflib.get_close_matches(query, [name for name in names if name not in substring], n=limit, cutoff=0.6)
    return (substring + close)[:limit]


def classify_severity(summary: ImpactSummary, change_type: ChangeType = ChangeType.MODIFY,
                      bands: Optional[Mapping[str, int]] = None) -> Severity:
    """
    Maps impact counts to a severity band.

    The score is the number of affected entities with tables and views counted
    twice; it is compared against the ``medium``/``high``/``critical`` cutoffs.
    Dropping something that has any consumer is at least medium. Adding affected
    entities never lowers the result.
    """
    bands = bands or config.SEVERITY_BANDS
    score = summary.total_affected + summary.tables_affected + summary.views_affected
    if score >= bands['critical']:
        severity = Severity.CRITICAL
    elif score >= bands['high']:
        severity = Severity.HIGH
    elif score >= bands['medium']:
        severity = Severity.MEDIUM
    else:
        severity = Severity.LOW

    if change_type == ChangeType.DROP and summary.total_affected > 0:
        severity = max(severity, Severity.MEDIUM)
    return severity


class ImpactAnalyzer:
    """Answers "what breaks if this entity is modified, dropped or renamed?" over one snapshot."""

    def __init__(self, graph: LineageGraph, max_depth: int = config.IMPACT_MAX_DEPTH,
                 severity_bands: Optional[Mapping[str, int]] = None):
        self.graph = graph
        self.max_depth = max_depth
        self.severity_bands = dict(severity_bands or config.SEVERITY_BANDS)
        self.flow = FlowAnalyzer(graph)

    def analyze(self, target_type: str, name: str,
                change_type: Union[ChangeType, str] = ChangeType.MODIFY) -> Union[ImpactReport, ImpactNotFound]:
        change_type = ChangeType(change_type)
        if target_type == 'column':
            table_name, _, column_name = (name or '').rpartition('.')
            return self.analyze_column(table_name, column_name, change_type)

        node = self.find_target(target_type, name)
        if node is None:
            return self._not_found(target_type, name, change_type)

        downstream = self.flow.get_downstream(node.id, self.max_depth)
        impacted = [n for n in downstream.nodes if n.id != node.id]
        total = len(impacted)

        report = ImpactReport(change_type, ImpactTarget(target_type, name, node_id=node.id))
        for impacted_node in impacted:
            depth = downstream.depths[impacted_node.id]
            item = self._item(impacted_node, depth, total, self._reason(node, depth))
            (report.direct_impacts if depth == 1 else report.transitive_impacts).append(item)

        report.summary = self._summary(node.id, impacted)
        report.severity = classify_severity(report.summary, change_type, self.severity_bands)
        report.suggestions = self._suggestions(node.name, node.type.value, change_type, report.severity,
                                               report.summary, [item.node for item in report.direct_impacts])
        logger.info(f"Impact of {change_type.value} on {node.id}: {total} affected, severity {report.severity.value}")
        return report

    def analyze_column(self, table_name: str, column_name: str,
                       change_type: Union[ChangeType, str] = ChangeType.MODIFY) -> Union[ImpactReport, ImpactNotFound]:
        """Impact of changing one column, following column edges rather than structural ones."""
        change_type = ChangeType(change_type)
        full_name = f"{table_name}.{column_name}" if table_name else column_name
        owner = self.find_target('table', table_name)
        if owner is None or not column_name or not self.graph.has_column(owner.id, column_name):
            return self._not_found('column', full_name, change_type)

        resolver = ColumnLineageResolver(self.graph, default_depth=self.max_depth)
        reached: Dict[Tuple[str, str], int] = {}
        for path in resolver.trace_downstream(owner.id, column_name, self.max_depth):
            for depth, step in enumerate(path.steps[1:], start=1):
                key = (step.node_id, step.column_name.lower())
                if key not in reached or depth < reached[key]:
                    reached[key] = depth

        target = ImpactTarget('column', column_name, node_id=owner.id, table_name=owner.name)
        report = ImpactReport(change_type, target)
        total = len(reached)
        impacted_nodes: Dict[str, LineageNode] = {}
        for (node_id, column), depth in sorted(reached.items(), key=lambda entry: entry[1]):
            node = self.graph.get_node(node_id)
            impacted_nodes.setdefault(node_id, node)
            item = self._item(node, depth, total, f"Uses column '{column_name}'", column_name=column)
            (report.direct_impacts if depth == 1 else report.transitive_impacts).append(item)

        report.summary = self._summary(owner.id, list(impacted_nodes.values()))
        report.summary.total_affected = total
        report.severity = classify_severity(report.summary, change_type, self.severity_bands)
        report.suggestions = self._suggestions(column_name, 'column', change_type, report.severity,
                                               report.summary, [item.node for item in report.direct_impacts])
        return report

    def find_target(self, target_type: str, name: str) -> Optional[LineageNode]:
        """Resolves a caller-supplied name (or node id) to a structural node."""
        if not name:
            return None
        node = self.graph.get_node(name)
        if node is not None and node.type != NodeType.COLUMN:
            return node
        preference = _TARGET_PREFERENCE.get(target_type, _TARGET_PREFERENCE['table'])
        matches = self.graph.find_nodes(name, preference)
        return matches[0] if matches else None

    def similar_names(self, name: str, limit: int = 3) -> List[str]:
        return find_similar_names(self.graph, name, limit)

    # --- helpers ------------------------------------------------------------

    def _item(self, node: LineageNode, depth: int, total: int, reason: str,
              column_name: Optional[str] = None) -> ImpactItem:
        file_path, line_number = self._location(node)
        return ImpactItem(
            node=node,
            impact_type='direct' if depth == 1 else 'transitive',
            depth=depth,
            reason=reason,
            severity=self._node_severity(node, total),
            file_path=file_path,
            line_number=line_number,
            column_name=column_name,
        )

    @staticmethod
    def _reason(target: LineageNode, depth: int) -> str:
        if depth == 1:
            return f"Depends on {target.type.value} '{target.name}'"
        return f"Depends on {target.type.value} '{target.name}' through {depth - 1} intermediate object(s)"

    def _node_severity(self, node: LineageNode, total: int) -> Severity:
        ratio = total / max(self.severity_bands['high'], 1)
        if node.type in (NodeType.VIEW, NodeType.CTE):
            return Severity.HIGH if ratio > 0.5 else Severity.MEDIUM
        if ratio > 1:
            return Severity.HIGH
        if ratio > 0.3:
            return Severity.MEDIUM
        return Severity.LOW

    def _location(self, node: LineageNode) -> Tuple[Optional[str], Optional[int]]:
        if node.file_path or node.line_number:
            return node.file_path, node.line_number
        files = node.metadata.get('definition_files') or []
        if len(files) == 1:
            return files[0], None
        if node.parent_id:
            parent = self.graph.get_node(node.parent_id)
            if parent is not None and (parent.file_path or parent.line_number):
                return parent.file_path, parent.line_number
        for edge in self.graph.incoming_edges(node.id) + self.graph.outgoing_edges(node.id):
            if edge.file_path:
                return edge.file_path, None
        return None, None

    def _summary(self, root_id: str, impacted: Sequence[LineageNode]) -> ImpactSummary:
        summary = ImpactSummary(total_affected=len(impacted))
        for node in impacted:
            if node.type == NodeType.TABLE:
                summary.tables_affected += 1
            elif node.type == NodeType.VIEW:
                summary.views_affected += 1
            elif node.type == NodeType.CTE:
                summary.ctes_affected += 1
            elif node.type == NodeType.EXTERNAL:
                summary.external_affected += 1

        statements = self.graph.statements_reading([root_id] + [node.id for node in impacted])
        files = {record.file_path for record in statements}
        for node in impacted:
            file_path, _ = self._location(node)
            if file_path:
                files.add(file_path)
        summary.queries_affected = len(statements)
        summary.files_affected = len(files)
        return summary

    @staticmethod
    def _suggestions(name: str, target_type: str, change_type: ChangeType, severity: Severity,
                     summary: ImpactSummary, direct_nodes: Sequence[LineageNode]) -> List[str]:
        suggestions = []
        if change_type == ChangeType.DROP:
            suggestions.append(f"Consider marking {target_type} '{name}' as deprecated instead of dropping immediately")
            suggestions.append(f"Notify all {'users' if severity == Severity.CRITICAL else 'affected teams'} about this change")
            views = [node.name for node in direct_nodes if node.type == NodeType.VIEW]
            if views:
                suggestions.append(f"Update or recreate dependent views first: {', '.join(views[:5])}")
        elif change_type == ChangeType.RENAME:
            suggestions.append(f"Update all references to {target_type} '{name}' before renaming")
            suggestions.append("Consider creating a synonym or alias for backward compatibility")

        if severity >= Severity.HIGH:
            suggestions.append("High impact: Schedule this change during a maintenance window")
            suggestions.append("Create a rollback plan in case of issues")

        if target_type == 'column':
            suggestions.append("Verify all queries using this column handle the change correctly")

        if summary.total_affected == 0:
            suggestions.append(f"No downstream dependencies found for {target_type} '{name}'")
        return suggestions

    def _not_found(self, target_type: str, name: str, change_type: ChangeType) -> ImpactNotFound:
        suggestions = ["It may be an external table or not indexed yet"]
        lookup = name.rpartition('.')[0] if target_type == 'column' else name
        suggestions.extend(f"Did you mean '{similar}'?" for similar in self.similar_names(lookup))
        return ImpactNotFound(
            target_type=target_type,
            name=name,
            change_type=change_type,
            error=f"{target_type} '{name}' not found in lineage graph",
            suggestions=suggestions,
        )
