import sqlglot

from sql_lineage.models import Transformation
from sql_lineage.statements import (
    CreateStatement,
    DeleteStatement,
    InsertStatement,
    SelectStatement,
    UnsupportedStatement,
    UpdateStatement,
    finalize_transformation,
    read_statement,
    stronger_transformation,
)


def read(sql, dialect=None):
    return read_statement(sqlglot.parse_one(sql, read=dialect), dialect)


def outputs_by_name(scope):
    return {out.name: out for out in scope.outputs}


def test_output_classification():
    statement = read(
        "SELECT a, b AS c, SUM(x) AS s, a + b AS t, 1 AS one, "
        "SUM(x) OVER (PARTITION BY a) AS w FROM t1"
    )
    assert isinstance(statement, SelectStatement)
    outputs = outputs_by_name(statement.query)
    assert outputs["a"].transformation == Transformation.PASSTHROUGH
    assert outputs["c"].transformation == Transformation.RENAMED
    assert outputs["s"].transformation == Transformation.AGGREGATED
    assert outputs["t"].transformation == Transformation.CALCULATED
    assert outputs["one"].transformation == Transformation.SOURCE
    assert outputs["one"].sources == []
    assert outputs["w"].transformation == Transformation.CALCULATED


def test_calculated_output_keeps_every_source_column():
    statement = read("SELECT price * quantity - discount AS net FROM order_lines")
    net = statement.query.outputs[0]
    assert [source.column for source in net.sources] == ["price", "quantity", "discount"]
    assert all(source.relation.name == "order_lines" for source in net.sources)


def test_join_relations_and_joined_columns():
    statement = read(
        "SELECT o.customer_id, c.name FROM orders o "
        "LEFT JOIN customers c ON o.customer_id = c.id"
    )
    relations = {rel.name: rel for rel in statement.query.relations}
    assert relations["orders"].role == "from"
    assert relations["customers"].role == "join"
    assert relations["customers"].join_type == "LEFT"
    assert "customer_id" in relations["customers"].join_condition

    outputs = outputs_by_name(statement.query)
    assert outputs["customer_id"].transformation == Transformation.JOINED
    assert outputs["name"].transformation == Transformation.PASSTHROUGH
    assert outputs["name"].sources[0].relation.name == "customers"


def test_unqualified_column_with_several_relations_keeps_candidates():
    statement = read("SELECT amount FROM orders o JOIN payments p ON o.id = p.order_id")
    source = statement.query.outputs[0].sources[0]
    assert source.relation is None
    assert [rel.name for rel in source.candidates] == ["orders", "payments"]


def test_subquery_reads_are_separate_from_relations():
    statement = read("SELECT a FROM t1 WHERE b IN (SELECT b FROM t2)")
    assert [rel.name for rel in statement.query.relations] == ["t1"]
    assert [(rel.name, rel.role) for rel in statement.query.derived_reads] == [("t2", "subquery")]


def test_derived_table_composes_transformations():
    statement = read(
        "SELECT d.customer_id, d.total FROM "
        "(SELECT customer_id, SUM(amount) AS total FROM payments GROUP BY customer_id) d"
    )
    assert [rel.name for rel in statement.query.relations] == ["payments"]
    total = outputs_by_name(statement.query)["total"]
    source = total.sources[0]
    assert source.column == "amount"
    assert source.relation.name == "payments"
    assert source.transformation == Transformation.AGGREGATED
    assert finalize_transformation(total.transformation, source, "total") == Transformation.AGGREGATED


def test_ctes_are_read_and_flagged():
    statement = read(
        "WITH RECURSIVE numbers AS (SELECT 1 AS n UNION ALL SELECT n + 1 FROM numbers WHERE n < 10) "
        "SELECT n FROM numbers"
    )
    assert [cte.name for cte in statement.ctes] == ["numbers"]
    cte = statement.ctes[0]
    assert cte.recursive
    assert [(rel.name, rel.kind) for rel in cte.query.relations] == [("numbers", "cte")]
    assert cte.query.outputs[0].name == "n"
    assert cte.query.outputs[0].transformation == Transformation.CALCULATED
    assert statement.query.relations[0].kind == "cte"


def test_cte_body_tables_are_not_reported_as_subquery_reads():
    statement = read("WITH base AS (SELECT id FROM raw.events) SELECT id FROM base")
    assert statement.query.derived_reads == []
    assert [(rel.schema, rel.name) for rel in statement.ctes[0].query.relations] == [("raw", "events")]


def test_create_table_with_columns():
    statement = read("CREATE TABLE sales.orders (id INT, total DECIMAL(10, 2))")
    assert isinstance(statement, CreateStatement)
    assert statement.object_type == "table"
    assert (statement.target.schema, statement.target.name) == ("sales", "orders")
    assert [name for name, _ in statement.columns] == ["id", "total"]
    assert statement.columns[0][1] == "INT"
    assert statement.query is None


def test_create_view_as_select():
    statement = read("CREATE VIEW v AS SELECT id FROM orders")
    assert isinstance(statement, CreateStatement)
    assert statement.object_type == "view"
    assert [out.name for out in statement.query.outputs] == ["id"]


def test_insert_with_column_list():
    statement = read(
        "INSERT INTO reports.summary (day, revenue) SELECT order_date, SUM(total) FROM orders GROUP BY order_date"
    )
    assert isinstance(statement, InsertStatement)
    assert statement.target_columns == ["day", "revenue"]
    assert len(statement.query.outputs) == 2
    assert statement.query.outputs[1].transformation == Transformation.AGGREGATED


def test_insert_values_has_no_query():
    statement = read("INSERT INTO t (a) VALUES (1)")
    assert isinstance(statement, InsertStatement)
    assert statement.query is None


def test_update_with_from():
    statement = read(
        "UPDATE customers SET tier = s.tier FROM scores s WHERE s.customer_id = customers.id",
        dialect="postgres",
    )
    assert isinstance(statement, UpdateStatement)
    assert statement.target.name == "customers"
    assert [rel.name for rel in statement.relations] == ["scores"]
    assignment = statement.assignments[0]
    assert assignment.name == "tier"
    assert assignment.sources[0].relation.name == "scores"


def test_update_self_reference_is_not_a_source():
    statement = read("UPDATE counters SET hits = hits + 1")
    assert statement.assignments[0].sources == []


def test_delete_with_subquery():
    statement = read("DELETE FROM orders WHERE customer_id IN (SELECT id FROM churned)")
    assert isinstance(statement, DeleteStatement)
    assert statement.target.name == "orders"
    assert [rel.name for rel in statement.derived_reads] == ["churned"]


def test_unsupported_statements():
    assert isinstance(read("DROP TABLE orders"), UnsupportedStatement)
    assert isinstance(read("CREATE INDEX idx ON orders (id)"), UnsupportedStatement)


def test_star_projection():
    statement = read("SELECT o.* FROM orders o JOIN customers c ON o.customer_id = c.id")
    star = statement.query.outputs[0]
    assert star.is_star
    assert [rel.name for rel in star.star_relations] == ["orders"]


def test_union_outputs_merge_sources():
    statement = read("SELECT id FROM a UNION ALL SELECT id FROM b")
    output = statement.query.outputs[0]
    assert [source.relation.name for source in output.sources] == ["a", "b"]
    assert [rel.name for rel in statement.query.relations] == ["a", "b"]


def test_stronger_transformation():
    assert stronger_transformation(Transformation.CALCULATED, Transformation.AGGREGATED) == Transformation.AGGREGATED
    assert stronger_transformation(Transformation.PASSTHROUGH, Transformation.JOINED) == Transformation.JOINED
    assert stronger_transformation(Transformation.SOURCE, Transformation.PASSTHROUGH) == Transformation.PASSTHROUGH
