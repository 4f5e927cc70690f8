# -*- coding: utf-8 -*-
"""
Closed statement model read from sqlglot ASTs.

Every parsed statement becomes exactly one of SelectStatement, CreateStatement,
InsertStatement, UpdateStatement, DeleteStatement or UnsupportedStatement. The
graph builder only ever dispatches on these classes, so dialect-specific AST
shapes stay inside this module.
"""
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Set, Tuple, Union

import sqlglot.expressions as exp
from sqlglot import Expression

from sql_lineage.models import Transformation

# Transformations that describe how a value was computed, as opposed to a bare
# column reference whose label depends only on the names involved
_VALUE_TRANSFORMS = {
    Transformation.JOINED: 1,
    Transformation.CALCULATED: 2,
    Transformation.AGGREGATED: 3,
}
_BARE_TRANSFORMS = (Transformation.PASSTHROUGH, Transformation.RENAMED)
_SCOPE_BOUNDARIES = (exp.Subquery, exp.Query)


@dataclass(frozen=True)
class RelationRef:
    """A table, view or CTE referenced by a statement."""
    name: str
    schema: Optional[str] = None
    alias: Optional[str] = None
    kind: str = 'table'  # table | cte
    role: str = 'from'  # from | join | subquery | target
    join_type: Optional[str] = None
    join_condition: Optional[str] = None
    line_number: Optional[int] = None

    @property
    def reference_name(self) -> str:
        return self.alias or self.name


@dataclass(frozen=True)
class ColumnSource:
    """
    A column an output depends on. ``relation`` is None when an unqualified
    column could come from several relations; ``candidates`` then lists them and
    the builder picks one once every relation's columns are known.
    """
    column: str
    relation: Optional[RelationRef] = None
    candidates: Tuple[RelationRef, ...] = ()
    transformation: Optional[Transformation] = None
    expression: Optional[str] = None


@dataclass
class OutputColumn:
    name: str
    expression: Optional[str] = None
    sources: List[ColumnSource] = field(default_factory=list)
    transformation: Transformation = Transformation.PASSTHROUGH
    is_star: bool = False
    star_relations: List[RelationRef] = field(default_factory=list)


@dataclass
class QueryScope:
    """One SELECT (or set operation) flattened to what lineage needs."""
    relations: List[RelationRef] = field(default_factory=list)
    derived_reads: List[RelationRef] = field(default_factory=list)
    outputs: List[OutputColumn] = field(default_factory=list)

    @property
    def reads(self) -> List[RelationRef]:
        return self.relations + self.derived_reads

    def output(self, name: str) -> Optional[OutputColumn]:
        wanted = name.lower()
        for out in self.outputs:
            if not out.is_star and out.name.lower() == wanted:
                return out
        return None


@dataclass
class CteDefinition:
    name: str
    query: QueryScope
    recursive: bool = False
    columns: List[str] = field(default_factory=list)
    line_number: Optional[int] = None


@dataclass
class Statement:
    kind = 'statement'
    ctes: List[CteDefinition] = field(default_factory=list)
    line_number: Optional[int] = None


@dataclass
class SelectStatement(Statement):
    kind = 'select'
    query: QueryScope = field(default_factory=QueryScope)


@dataclass
class CreateStatement(Statement):
    kind = 'create'
    target: Optional[RelationRef] = None
    object_type: str = 'table'  # table | view
    columns: List[Tuple[str, Optional[str]]] = field(default_factory=list)
    query: Optional[QueryScope] = None


@dataclass
class InsertStatement(Statement):
    kind = 'insert'
    target: Optional[RelationRef] = None
    target_columns: List[str] = field(default_factory=list)
    query: Optional[QueryScope] = None


@dataclass
class UpdateStatement(Statement):
    kind = 'update'
    target: Optional[RelationRef] = None
    assignments: List[OutputColumn] = field(default_factory=list)
    relations: List[RelationRef] = field(default_factory=list)
    derived_reads: List[RelationRef] = field(default_factory=list)


@dataclass
class DeleteStatement(Statement):
    kind = 'delete'
    target: Optional[RelationRef] = None
    relations: List[RelationRef] = field(default_factory=list)
    derived_reads: List[RelationRef] = field(default_factory=list)


@dataclass
class UnsupportedStatement(Statement):
    kind = 'unsupported'
    statement_type: str = ''


AnyStatement = Union[SelectStatement, CreateStatement, InsertStatement, UpdateStatement, DeleteStatement,
                     UnsupportedStatement]


def stronger_transformation(first: Optional[Transformation],
                            second: Optional[Transformation]) -> Optional[Transformation]:
    """Picks the transformation that says more about how a value was computed."""
    first_rank = _VALUE_TRANSFORMS.get(first, 0)
    second_rank = _VALUE_TRANSFORMS.get(second, 0)
    if first_rank == 0 and second_rank == 0:
        if first in (None, Transformation.SOURCE):
            return second or first
        return first
    return first if first_rank >= second_rank else second


def finalize_transformation(transformation: Transformation, source: ColumnSource,
                            target_column: str) -> Transformation:
    """
    Resolves the label of one column edge. Value transformations picked up in
    nested derived tables win over bare references; a bare reference is a
    passthrough when the names match and a rename otherwise.
    """
    result = transformation
    if source.transformation is not None:
        result = stronger_transformation(transformation, source.transformation)
    if result in _BARE_TRANSFORMS:
        if source.column.lower() == target_column.lower():
            return Transformation.PASSTHROUGH
        return Transformation.RENAMED
    return result


def read_statement(expression: Expression, dialect: Optional[str] = None) -> AnyStatement:
    """Converts one sqlglot statement into the closed statement model."""
    return StatementReader(dialect).read(expression)


class StatementReader:
    """Reads tables, CTEs and column derivations out of a single statement."""

    def __init__(self, dialect: Optional[str] = None):
        self.dialect = dialect
        self._cte_names: Set[str] = set()
        self._consumed: Set[int] = set()

    def read(self, expression: Expression) -> AnyStatement:
        self._cte_names = {cte.alias_or_name.lower() for cte in expression.find_all(exp.CTE)}
        self._consumed = set()
        line = _first_line(expression)

        if isinstance(expression, exp.Create):
            statement = self._read_create(expression)
        elif isinstance(expression, exp.Insert):
            statement = self._read_insert(expression)
        elif isinstance(expression, exp.Update):
            statement = self._read_update(expression)
        elif isinstance(expression, exp.Delete):
            statement = self._read_delete(expression)
        elif isinstance(expression, _SCOPE_BOUNDARIES):
            statement = SelectStatement(query=self.read_query(expression))
        else:
            statement = None

        if statement is None:
            return UnsupportedStatement(statement_type=type(expression).__name__.lower(), line_number=line)

        statement.ctes = self._read_ctes(expression)
        statement.line_number = line
        return statement

    # --- statement variants -------------------------------------------------

    def _read_create(self, create: exp.Create) -> Optional[CreateStatement]:
        object_type = (create.args.get('kind') or '').upper()
        if object_type not in ('TABLE', 'VIEW'):
            return None

        target_expr = create.this
        columns: List[Tuple[str, Optional[str]]] = []
        if isinstance(target_expr, exp.Schema):
            for column_def in target_expr.expressions:
                if isinstance(column_def, exp.ColumnDef):
                    data_type = column_def.args.get('kind')
                    columns.append((column_def.name, data_type.sql(dialect=self.dialect) if data_type else None))
            target_expr = target_expr.this
        if not isinstance(target_expr, exp.Table) or not target_expr.name:
            return None

        query = create.expression
        return CreateStatement(
            target=self._relation(target_expr, role='target'),
            object_type=object_type.lower(),
            columns=columns,
            query=self.read_query(query) if isinstance(query, _SCOPE_BOUNDARIES) else None,
        )

    def _read_insert(self, insert: exp.Insert) -> Optional[InsertStatement]:
        target_expr = insert.this
        target_columns: List[str] = []
        if isinstance(target_expr, exp.Schema):
            target_columns = [col.name for col in target_expr.expressions if isinstance(col, (exp.Identifier, exp.Column))]
            target_expr = target_expr.this
        if not isinstance(target_expr, exp.Table) or not target_expr.name:
            return None

        query = insert.expression
        return InsertStatement(
            target=self._relation(target_expr, role='target'),
            target_columns=target_columns,
            query=self.read_query(query) if isinstance(query, _SCOPE_BOUNDARIES) else None,
        )

    def _read_update(self, update: exp.Update) -> Optional[UpdateStatement]:
        target_expr = update.this
        if not isinstance(target_expr, exp.Table) or not target_expr.name:
            return None
        target = self._relation(target_expr, role='target')
        self._consumed.add(id(target_expr))

        sources: Dict[str, Union[RelationRef, QueryScope]] = {target.reference_name.lower(): target}
        relations: List[RelationRef] = []
        from_ = _find_arg(update, exp.From)
        if from_ is not None:
            self._add_source(from_.this, 'from', sources, relations, [])
        for join in update.args.get('joins') or []:
            self._add_source(join.this, 'join', sources, relations, [], join=join)

        assignments = []
        for assignment in update.expressions:
            if not isinstance(assignment, exp.EQ) or not isinstance(assignment.this, exp.Column):
                continue
            value = assignment.expression
            column_name = assignment.this.name
            output = self._read_output(value, column_name, sources, set())
            # SET x = x + 1 reads the row being written, not an upstream column
            output.sources = [src for src in output.sources if src.relation is not target]
            assignments.append(output)

        return UpdateStatement(
            target=target,
            assignments=assignments,
            relations=relations,
            derived_reads=self._expression_reads(update),
        )

    def _read_delete(self, delete: exp.Delete) -> Optional[DeleteStatement]:
        target_expr = delete.this
        if not isinstance(target_expr, exp.Table) or not target_expr.name:
            return None
        target = self._relation(target_expr, role='target')
        self._consumed.add(id(target_expr))

        relations: List[RelationRef] = []
        for table in delete.args.get('using') or []:
            if isinstance(table, exp.Table) and table.name:
                relations.append(self._relation(table, role='from'))
                self._consumed.add(id(table))

        return DeleteStatement(target=target, relations=relations, derived_reads=self._expression_reads(delete))

    def _read_ctes(self, expression: Expression) -> List[CteDefinition]:
        ctes = []
        for cte in expression.find_all(exp.CTE):
            with_ = cte.parent
            recursive = bool(with_.args.get('recursive')) if isinstance(with_, exp.With) else False
            alias = cte.args.get('alias')
            declared = [col.name for col in alias.columns] if isinstance(alias, exp.TableAlias) else []
            ctes.append(CteDefinition(
                name=cte.alias_or_name,
                query=self.read_query(cte.this),
                recursive=recursive,
                columns=declared,
                line_number=_first_line(cte),
            ))
        return ctes

    # --- queries ------------------------------------------------------------

    def read_query(self, query: Expression) -> QueryScope:
        if isinstance(query, exp.Subquery):
            return self.read_query(query.this)
        if isinstance(query, exp.SetOperation):
            return _combine_scopes(self.read_query(query.left), self.read_query(query.right))
        if isinstance(query, exp.Select):
            return self._read_select(query)
        return QueryScope()

    def _read_select(self, select: exp.Select) -> QueryScope:
        sources: Dict[str, Union[RelationRef, QueryScope]] = {}
        relations: List[RelationRef] = []
        derived_reads: List[RelationRef] = []
        join_keys: Set[Tuple[Optional[str], str]] = set()

        from_ = _find_arg(select, exp.From)
        if from_ is not None:
            self._add_source(from_.this, 'from', sources, relations, derived_reads)
        for join in select.args.get('joins') or []:
            self._add_source(join.this, 'join', sources, relations, derived_reads, join=join)
            join_keys.update(_join_keys(join))

        outputs: List[OutputColumn] = []
        for projection in select.expressions:
            if isinstance(projection, exp.Star) or (isinstance(projection, exp.Column) and isinstance(projection.this, exp.Star)):
                outputs.extend(self._expand_star(projection, sources))
                continue
            name = projection.alias_or_name or projection.sql(dialect=self.dialect)
            outputs.append(self._read_output(projection.unalias(), name, sources, join_keys))

        derived_reads.extend(self._expression_reads(select))
        return QueryScope(relations=relations, derived_reads=derived_reads, outputs=outputs)

    def _add_source(self, node: Expression, role: str, sources: Dict[str, Union[RelationRef, QueryScope]],
                    relations: List[RelationRef], derived_reads: List[RelationRef],
                    join: Optional[exp.Join] = None):
        if isinstance(node, exp.Table):
            if not node.name:
                return
            self._consumed.add(id(node))
            relation = self._relation(node, role=role, join=join)
            sources[node.alias_or_name.lower()] = relation
            relations.append(relation)
        elif isinstance(node, exp.Subquery):
            nested = self.read_query(node.this)
            if node.alias:
                sources[node.alias.lower()] = nested
            relations.extend(nested.relations)
            derived_reads.extend(nested.derived_reads)

    def _relation(self, table: exp.Table, role: str, join: Optional[exp.Join] = None) -> RelationRef:
        schema = table.db or None
        kind = 'cte' if not schema and table.name.lower() in self._cte_names else 'table'
        join_type = join_condition = None
        if join is not None:
            join_type = ' '.join(part for part in (join.side, join.kind) if part) or 'INNER'
            on = join.args.get('on')
            using = join.args.get('using')
            if on is not None:
                join_condition = on.sql(dialect=self.dialect)
            elif using:
                join_condition = f"USING ({', '.join(col.name for col in using)})"
        return RelationRef(
            name=table.name,
            schema=schema,
            alias=table.alias or None,
            kind=kind,
            role=role,
            join_type=join_type,
            join_condition=join_condition,
            line_number=_line_of(table.this),
        )

    def _expression_reads(self, root: Expression) -> List[RelationRef]:
        """Tables read only inside WHERE/SELECT/HAVING subqueries of ``root``."""
        reads = []
        for table in root.find_all(exp.Table):
            if id(table) in self._consumed or not table.name or _inside_cte(table, root):
                continue
            self._consumed.add(id(table))
            reads.append(self._relation(table, role='subquery'))
        return reads

    # --- columns ------------------------------------------------------------

    def _read_output(self, expression: Expression, name: str, sources: Dict[str, Union[RelationRef, QueryScope]],
                     join_keys: Set[Tuple[Optional[str], str]]) -> OutputColumn:
        references = [node for node in _walk_own(expression)
                      if isinstance(node, exp.Column) and not isinstance(node.this, exp.Star)]
        column_sources: List[ColumnSource] = []
        seen = set()
        for reference in references:
            for source in self._resolve(reference, sources):
                key = (id(source.relation), source.column.lower(), source.candidates)
                if key not in seen:
                    seen.add(key)
                    column_sources.append(source)

        return OutputColumn(
            name=name,
            expression=expression.sql(dialect=self.dialect),
            sources=column_sources,
            transformation=_classify(expression, name, references, join_keys),
        )

    def _expand_star(self, projection: Expression, sources: Dict[str, Union[RelationRef, QueryScope]]) -> List[OutputColumn]:
        qualifier = projection.table.lower() if isinstance(projection, exp.Column) and projection.table else None
        targets = [sources[qualifier]] if qualifier in sources else ([] if qualifier else list(sources.values()))

        outputs = []
        star_relations = []
        for target in targets:
            if isinstance(target, RelationRef):
                star_relations.append(target)
            else:
                # Derived tables already know their columns
                for nested in target.outputs:
                    if nested.is_star:
                        star_relations.extend(nested.star_relations)
                        continue
                    outputs.append(OutputColumn(
                        name=nested.name,
                        expression=nested.name,
                        sources=[_through(source, nested) for source in nested.sources],
                        transformation=Transformation.PASSTHROUGH,
                    ))
        if star_relations:
            outputs.append(OutputColumn(name='*', expression=projection.sql(dialect=self.dialect), is_star=True,
                                        star_relations=star_relations))
        return outputs

    def _resolve(self, reference: exp.Column, sources: Dict[str, Union[RelationRef, QueryScope]]) -> List[ColumnSource]:
        column = reference.name
        qualifier = reference.table
        if qualifier:
            target = sources.get(qualifier.lower())
            if target is None:
                target = next((src for src in sources.values()
                               if isinstance(src, RelationRef) and src.name.lower() == qualifier.lower()), None)
            if target is None:
                # Correlated reference to an outer query
                return []
            return _from_source(target, column)

        if len(sources) == 1:
            return _from_source(next(iter(sources.values())), column)
        for target in sources.values():
            if isinstance(target, QueryScope) and target.output(column) is not None:
                return _from_source(target, column)
        relations = tuple(src for src in sources.values() if isinstance(src, RelationRef))
        if not relations:
            return []
        return [ColumnSource(column=column, candidates=relations)]


def _from_source(target: Union[RelationRef, QueryScope], column: str) -> List[ColumnSource]:
    if isinstance(target, RelationRef):
        return [ColumnSource(column=column, relation=target)]

    output = target.output(column)
    if output is not None:
        return [_through(source, output) for source in output.sources]

    star_relations = [rel for out in target.outputs if out.is_star for rel in out.star_relations]
    if len(star_relations) == 1:
        return [ColumnSource(column=column, relation=star_relations[0])]
    if star_relations:
        return [ColumnSource(column=column, candidates=tuple(star_relations))]
    return []


def _through(source: ColumnSource, output: OutputColumn) -> ColumnSource:
    """Carries a nested derived-table output's transformation onto its source."""
    transformation = source.transformation
    expression = source.expression
    if output.transformation in _VALUE_TRANSFORMS:
        transformation = stronger_transformation(output.transformation, transformation)
        expression = output.expression
    return ColumnSource(
        column=source.column,
        relation=source.relation,
        candidates=source.candidates,
        transformation=transformation,
        expression=expression,
    )


def _combine_scopes(left: QueryScope, right: QueryScope) -> QueryScope:
    """UNION/INTERSECT/EXCEPT: outputs are matched by position, named after the left side."""
    outputs = []
    for position, left_out in enumerate(left.outputs):
        right_out = right.outputs[position] if position < len(right.outputs) else None
        if right_out is None or left_out.is_star or right_out.is_star:
            outputs.append(left_out)
            continue
        outputs.append(OutputColumn(
            name=left_out.name,
            expression=left_out.expression,
            sources=left_out.sources + right_out.sources,
            transformation=stronger_transformation(left_out.transformation, right_out.transformation),
        ))
    return QueryScope(
        relations=left.relations + right.relations,
        derived_reads=left.derived_reads + right.derived_reads,
        outputs=outputs,
    )


def _classify(expression: Expression, name: str, references: List[exp.Column],
              join_keys: Set[Tuple[Optional[str], str]]) -> Transformation:
    if not references:
        return Transformation.SOURCE
    if isinstance(expression, exp.Column):
        qualifier = expression.table.lower() if expression.table else None
        column = expression.name.lower()
        if (qualifier, column) in join_keys or (None, column) in join_keys:
            return Transformation.JOINED
        if expression.name.lower() != name.lower():
            return Transformation.RENAMED
        return Transformation.PASSTHROUGH
    if any(isinstance(node, exp.AggFunc) and not _inside_window(node, expression) for node in _walk_own(expression)):
        return Transformation.AGGREGATED
    return Transformation.CALCULATED


def _join_keys(join: exp.Join) -> Set[Tuple[Optional[str], str]]:
    keys = set()
    on = join.args.get('on')
    if on is not None:
        for column in _walk_own(on):
            if isinstance(column, exp.Column):
                keys.add((column.table.lower() if column.table else None, column.name.lower()))
    for identifier in join.args.get('using') or []:
        keys.add((None, identifier.name.lower()))
    return keys


def _walk_own(node: Expression) -> Iterator[Expression]:
    """Depth-first walk in source order that does not descend into subqueries."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        children = [child for child in current.iter_expressions() if not isinstance(child, _SCOPE_BOUNDARIES)]
        stack.extend(reversed(children))


def _inside_window(node: Expression, root: Expression) -> bool:
    current = node.parent
    while current is not None and current is not root.parent:
        if isinstance(current, exp.Window):
            return True
        if current is root:
            break
        current = current.parent
    return False


def _inside_cte(node: Expression, root: Expression) -> bool:
    current = node.parent
    while current is not None and current is not root:
        if isinstance(current, exp.CTE):
            return True
        current = current.parent
    return False


def _find_arg(expression: Expression, arg_type: type) -> Optional[Expression]:
    """Finds a direct child of the given type, whatever argument key it sits under."""
    for value in expression.args.values():
        if isinstance(value, arg_type):
            return value
    return None


def _line_of(node: Optional[Expression]) -> Optional[int]:
    if node is None:
        return None
    return node.meta.get('line')


def _first_line(node: Expression) -> Optional[int]:
    for child in node.walk():
        if isinstance(child, exp.Identifier):
            line = child.meta.get('line')
            if line:
                return line
    return None
