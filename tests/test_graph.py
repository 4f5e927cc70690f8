import pytest

from sql_lineage.graph import LineageGraph
from sql_lineage.models import EdgeType, LineageEdge, LineageNode, NodeType


def test_state_round_trip(test_env, build_workspace):
    result = build_workspace({
        "orders.sql": "CREATE TABLE orders (id INT, total INT)",
        "report.sql": "CREATE VIEW report AS SELECT id, total * 2 AS doubled FROM orders WHERE id IN (SELECT id FROM vip)",
        "broken.sql": "SELECT 'unterminated",
    })
    graph = result.graph
    graph.save_state(test_env["state_file"])

    loaded = LineageGraph.load_state(test_env["state_file"])
    assert loaded is not None
    assert set(loaded.nodes) == set(graph.nodes)
    assert loaded.edges == graph.edges
    assert [edge.metadata for edge in loaded.edges] == [edge.metadata for edge in graph.edges]
    assert loaded.column_edges == graph.column_edges
    assert loaded.statements == graph.statements
    assert loaded.diagnostics == graph.diagnostics
    assert loaded.get_node("view:report").metadata["definition_files"] == ["report.sql"]


def test_load_state_missing_or_corrupt(test_env):
    assert LineageGraph.load_state(test_env["state_file"]) is None
    test_env["state_file"].write_text("{not json", encoding="utf-8")
    assert LineageGraph.load_state(test_env["state_file"]) is None


def test_dangling_endpoints_become_external_nodes():
    graph = LineageGraph(
        nodes=[LineageNode("view:v", NodeType.VIEW, "v")],
        edges=[LineageEdge("e1", "table:raw.events", "view:v")],
    )
    node = graph.get_node("table:raw.events")
    assert node.type == NodeType.EXTERNAL
    assert node.metadata["qualified_name"] == "raw.events"


def test_graph_is_read_only(orders_graph):
    with pytest.raises(TypeError):
        orders_graph.nodes["table:x"] = LineageNode("table:x", NodeType.TABLE, "x")
    nx_graph = orders_graph.to_networkx()
    with pytest.raises(Exception):
        nx_graph.add_node("table:x")
    assert nx_graph.has_edge("table:orders", "view:daily_orders")


def test_node_and_edge_metadata_are_read_only(orders_graph):
    node = orders_graph.get_node("table:orders")
    with pytest.raises(TypeError):
        node.metadata["file_path"] = "elsewhere.sql"
    [edge] = orders_graph.incoming_edges("view:daily_orders")
    with pytest.raises(TypeError):
        edge.metadata["reference_type"] = "join"
    assert node.file_path == "orders.sql"
    assert node.to_dict()["metadata"]["file_path"] == "orders.sql"


def test_find_nodes_follows_type_preference(build_graph):
    graph = build_graph({
        "a.sql": "CREATE TABLE sales.orders (id INT)",
        "b.sql": "CREATE VIEW orders_v AS SELECT id FROM sales.orders",
    })
    assert [node.id for node in graph.find_nodes("ORDERS")] == ["table:sales.orders"]
    assert [node.id for node in graph.find_nodes("sales.orders")] == ["table:sales.orders"]
    assert graph.find_nodes("orders", types=[NodeType.VIEW]) == []
    assert graph.find_nodes("") == []


def test_subgraph_expands_only_requested_nodes(orders_graph):
    data = orders_graph.subgraph(["table:orders", "view:daily_orders", "table:missing"],
                                 expanded=["view:daily_orders"])
    ids = [node["id"] for node in data["nodes"]]
    assert ids[:2] == ["table:orders", "view:daily_orders"]
    assert "column:view:daily_orders.total_revenue" in ids
    assert "column:table:orders.total" not in ids
    assert [edge["sourceId"] for edge in data["edges"]] == ["table:orders"]
    assert {edge["targetColumn"] for edge in data["columnEdges"]} == {"order_date", "total_revenue", "order_count"}
    assert data["expandedNodes"] == ["view:daily_orders"]


def test_column_queries(orders_graph):
    assert orders_graph.has_column("view:daily_orders", "TOTAL_REVENUE")
    assert not orders_graph.has_column("view:daily_orders", "total")
    [edge] = orders_graph.column_edges_into("view:daily_orders", "total_revenue")
    assert (edge.source_node_id, edge.source_column) == ("table:orders", "total")
    assert orders_graph.column_edges_from("table:orders", "customer_id") == ()


def test_stats_and_file_index(orders_graph):
    stats = orders_graph.stats()
    assert stats["table"] == 1
    assert stats["view"] == 1
    assert stats["edges"] == 1
    assert stats["files"] == 1
    assert {node.id for node in orders_graph.nodes_for_file("orders.sql")} == {"table:orders", "view:daily_orders"}


def test_statements_reading(orders_graph):
    [record] = orders_graph.statements_reading(["table:orders"])
    assert record.kind == "create"
    assert record.writes == ("view:daily_orders",)
    assert orders_graph.incoming_edges("view:daily_orders")[0].type == EdgeType.DIRECT
