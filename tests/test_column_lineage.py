from sql_lineage.column_lineage import ColumnLineageResolver, describe_paths
from sql_lineage.models import Transformation

CHAIN_SQL = """
CREATE TABLE orders (id INT, price INT, quantity INT, discount INT);
CREATE VIEW v1 AS SELECT id, price * quantity - discount AS net, 'web' AS channel FROM orders;
CREATE VIEW v2 AS SELECT id, net FROM v1;
"""


def test_aggregated_column_upstream(orders_graph):
    result = ColumnLineageResolver(orders_graph).resolve("view:daily_orders", "total_revenue", 5)
    assert result.found
    [path] = result.upstream
    assert path.end.to_dict() == {
        "nodeId": "table:orders",
        "nodeName": "orders",
        "nodeType": "table",
        "columnName": "total",
        "transformation": "aggregated",
        "expression": "SUM(total)",
        "edgeType": None,
    }
    assert result.downstream == []


def test_downstream_from_base_column(orders_graph):
    paths = ColumnLineageResolver(orders_graph).trace_downstream("table:orders", "total", 5)
    assert [(path.end.node_id, path.end.column_name) for path in paths] == [("view:daily_orders", "total_revenue")]
    assert describe_paths(paths) == ["orders.total -> SUM(total) -> daily_orders.total_revenue"]


def test_passthrough_chain_round_trip(build_graph):
    graph = build_graph({"chain.sql": CHAIN_SQL})
    resolver = ColumnLineageResolver(graph)
    [upstream] = resolver.trace_upstream("view:v2", "id", 5)
    assert upstream.node_ids == ["view:v2", "view:v1", "table:orders"]
    assert all(step.transformation == Transformation.PASSTHROUGH for step in upstream.steps[1:])

    downstream = resolver.trace_downstream("table:orders", "id", 5)
    assert [path.node_ids for path in downstream] == [["table:orders", "view:v1", "view:v2"]]


def test_calculated_column_has_a_path_per_input(build_graph):
    graph = build_graph({"chain.sql": CHAIN_SQL})
    paths = ColumnLineageResolver(graph).trace_upstream("view:v2", "net", 5)
    assert sorted(path.end.column_name for path in paths) == ["discount", "price", "quantity"]
    assert all(path.steps[2].transformation == Transformation.CALCULATED for path in paths)


def test_literal_column_starts_at_its_origin(build_graph):
    graph = build_graph({"chain.sql": CHAIN_SQL})
    [path] = ColumnLineageResolver(graph).trace_upstream("view:v1", "channel", 5)
    assert path.node_ids == ["view:v1", "view:v1"]
    assert path.end.transformation == Transformation.SOURCE
    assert path.end.expression == "'web'"


def test_depth_and_path_caps(build_graph):
    graph = build_graph({"chain.sql": CHAIN_SQL})
    [shallow] = ColumnLineageResolver(graph).trace_upstream("view:v2", "id", 1)
    assert shallow.node_ids == ["view:v2", "view:v1"]
    assert len(ColumnLineageResolver(graph, max_paths=1).trace_upstream("view:v2", "net", 5)) == 1


def test_unknown_column_and_node(orders_graph):
    resolver = ColumnLineageResolver(orders_graph)
    missing_column = resolver.resolve("view:daily_orders", "nope")
    assert not missing_column.found
    assert missing_column.warning == "No lineage available for column 'nope' on 'daily_orders'"
    assert missing_column.to_dict()["upstream"] == []

    missing_node = resolver.resolve("table:ghost", "id")
    assert missing_node.warning == "No lineage available: node 'table:ghost' not found"
