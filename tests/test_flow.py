import pytest

from sql_lineage.flow import FlowAnalyzer
from sql_lineage.graph import LineageGraph
from sql_lineage.models import Direction, EdgeType, LineageEdge, LineageNode, NodeType

CHAIN_SQL = {
    "base.sql": "CREATE TABLE orders (id INT, total INT);",
    "staging.sql": "CREATE VIEW stg_orders AS SELECT id, total FROM orders JOIN raw.rates r ON r.id = orders.id;",
    "marts.sql": """
        CREATE VIEW order_totals AS SELECT id, SUM(total) AS total FROM stg_orders GROUP BY id;
        CREATE VIEW big_orders AS SELECT id FROM order_totals WHERE total > 100;
    """,
}


@pytest.fixture
def chain_graph(build_graph):
    return build_graph(CHAIN_SQL)


def test_orders_downstream(orders_graph):
    result = FlowAnalyzer(orders_graph).get_downstream("table:orders", 5)
    assert result.node_ids == ["view:daily_orders"]
    assert result.depths == {"view:daily_orders": 1}
    [path] = result.paths
    assert path.node_ids == ["table:orders", "view:daily_orders"]
    assert path.end.edge_type == EdgeType.DIRECT


def test_orders_upstream(orders_graph):
    result = FlowAnalyzer(orders_graph).get_upstream("view:daily_orders", 5)
    assert result.node_ids == ["table:orders"]


def test_upstream_and_downstream_are_inverse(chain_graph):
    analyzer = FlowAnalyzer(chain_graph)
    for node in chain_graph.structural_nodes():
        for reached in analyzer.get_downstream(node.id, 20).node_ids:
            assert node.id in analyzer.get_upstream(reached, 20).node_ids


def test_depth_limit_is_monotonic(chain_graph):
    analyzer = FlowAnalyzer(chain_graph)
    previous = set()
    for depth in range(1, 6):
        reached = set(analyzer.get_downstream("table:orders", depth).node_ids)
        assert previous <= reached
        previous = reached
    assert analyzer.get_downstream("table:orders", 1).node_ids == ["view:stg_orders"]
    assert analyzer.get_downstream("table:orders", 3).depths["view:big_orders"] == 3


def test_exclude_external_and_type_filter(chain_graph):
    analyzer = FlowAnalyzer(chain_graph)
    upstream = analyzer.get_upstream("view:big_orders", 10)
    assert "external:raw.rates" in upstream.node_ids
    assert "external:raw.rates" not in analyzer.get_upstream("view:big_orders", 10, exclude_external=True).node_ids
    tables = analyzer.get_upstream("view:big_orders", 10, node_types=[NodeType.TABLE])
    assert tables.node_ids == ["table:orders"]


def test_join_condition_is_reported_on_the_path(chain_graph):
    result = FlowAnalyzer(chain_graph).get_downstream("external:raw.rates", 1)
    [path] = result.paths
    assert path.end.expression == "r.id = orders.id"


def test_unknown_node_gives_empty_result(chain_graph):
    result = FlowAnalyzer(chain_graph).get_upstream("table:nope", 5)
    assert result.nodes == []
    assert result.paths == []


def test_self_cycle_reports_the_root_once():
    graph = LineageGraph(
        nodes=[LineageNode("cte:x", NodeType.CTE, "x")],
        edges=[LineageEdge("cte:x->cte:x", "cte:x", "cte:x", EdgeType.DERIVED)],
    )
    result = FlowAnalyzer(graph).get_downstream("cte:x", 10)
    assert result.node_ids == ["cte:x"]
    assert result.paths[0].node_ids == ["cte:x", "cte:x"]


def test_cycles_terminate_and_are_detected():
    nodes = [LineageNode(f"view:{name}", NodeType.VIEW, name) for name in ("a", "b", "c")]
    edges = [
        LineageEdge("a->b", "view:a", "view:b"),
        LineageEdge("b->c", "view:b", "view:c"),
        LineageEdge("c->a", "view:c", "view:a"),
    ]
    graph = LineageGraph(nodes, edges)
    analyzer = FlowAnalyzer(graph)
    assert analyzer.get_downstream("view:a", 20).node_ids == ["view:b", "view:c", "view:a"]
    assert analyzer.detect_cycles() == [["view:a", "view:b", "view:c"]]


def test_lineage_both_directions(chain_graph):
    result = FlowAnalyzer(chain_graph).get_lineage("view:order_totals", Direction.BOTH, 10)
    assert result.depths["view:big_orders"] == 1
    assert result.depths["view:stg_orders"] == 1
    assert result.depths["table:orders"] == 2


def test_path_between(chain_graph):
    analyzer = FlowAnalyzer(chain_graph)
    path = analyzer.get_path_between("table:orders", "view:big_orders")
    assert path.node_ids == ["table:orders", "view:stg_orders", "view:order_totals", "view:big_orders"]
    assert analyzer.get_path_between("view:big_orders", "table:orders") is None
    assert analyzer.get_path_between("table:orders", "view:big_orders", max_depth=2) is None


def test_roots_and_terminals(chain_graph):
    analyzer = FlowAnalyzer(chain_graph)
    assert {node.id for node in analyzer.find_root_sources()} == {"table:orders", "external:raw.rates"}
    assert [node.id for node in analyzer.find_terminal_nodes()] == ["view:big_orders"]
