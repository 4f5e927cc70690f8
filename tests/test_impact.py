import pytest

from sql_lineage.impact import ImpactAnalyzer, classify_severity, find_similar_names
from sql_lineage.models import ChangeType, ImpactNotFound, ImpactReport, ImpactSummary, Severity

FANOUT_SQL = {
    "base.sql": "CREATE TABLE events (id INT, kind TEXT);",
    "views.sql": "\n".join(
        f"CREATE VIEW events_{i} AS SELECT id, kind FROM events;" for i in range(6)
    ),
    "marts.sql": "CREATE VIEW events_rollup AS SELECT kind, COUNT(id) AS n FROM events_0 GROUP BY kind;",
}


def test_drop_orders(orders_graph):
    report = ImpactAnalyzer(orders_graph).analyze("table", "orders", "drop")
    assert isinstance(report, ImpactReport)
    assert [item.node.id for item in report.direct_impacts] == ["view:daily_orders"]
    assert report.transitive_impacts == []
    assert report.summary.views_affected == 1
    assert report.summary.total_affected == 1
    assert report.severity == Severity.MEDIUM
    assert report.direct_impacts[0].reason == "Depends on table 'orders'"
    assert report.direct_impacts[0].file_path == "orders.sql"
    assert "Update or recreate dependent views first: daily_orders" in report.suggestions
    assert report.suggestions[0] == "Consider marking table 'orders' as deprecated instead of dropping immediately"


def test_shared_cte_names_do_not_leak_consumers(build_graph):
    graph = build_graph({
        "a.sql": "CREATE TABLE a (id INT);\nCREATE VIEW v1 AS WITH base AS (SELECT id FROM a) SELECT id FROM base;",
        "b.sql": "CREATE TABLE b (id INT);\nCREATE VIEW v2 AS WITH base AS (SELECT id FROM b) SELECT id FROM base;",
    })
    report = ImpactAnalyzer(graph).analyze("table", "a", "drop")
    affected = [item.node.id for item in report.direct_impacts + report.transitive_impacts]
    assert affected == ["cte:a.sql#1.base", "view:v1"]
    assert report.summary.ctes_affected == 1


def test_modify_leaf_has_no_dependencies(orders_graph):
    report = ImpactAnalyzer(orders_graph).analyze("view", "daily_orders", ChangeType.MODIFY)
    assert report.severity == Severity.LOW
    assert report.summary.total_affected == 0
    assert report.suggestions == ["No downstream dependencies found for view 'daily_orders'"]


def test_transitive_impacts_are_grouped_by_depth(build_graph):
    graph = build_graph(FANOUT_SQL)
    report = ImpactAnalyzer(graph).analyze("table", "events", "rename")
    assert len(report.direct_impacts) == 6
    assert [item.node.id for item in report.transitive_impacts] == ["view:events_rollup"]
    assert list(report.transitive_by_depth) == [2]
    assert report.summary.views_affected == 7
    assert report.severity == Severity.HIGH
    assert "Update all references to table 'events' before renaming" in report.suggestions
    assert "Create a rollback plan in case of issues" in report.suggestions
    data = report.to_dict()
    assert data["transitiveByDepth"]["2"][0]["reason"] == "Depends on table 'events' through 1 intermediate object(s)"


def test_column_impact(orders_graph):
    report = ImpactAnalyzer(orders_graph).analyze("column", "orders.total", "drop")
    [item] = report.direct_impacts
    assert (item.node.id, item.column_name) == ("view:daily_orders", "total_revenue")
    assert report.target.table_name == "orders"
    assert "Verify all queries using this column handle the change correctly" in report.suggestions


def test_not_found_suggests_similar_names(orders_graph):
    result = ImpactAnalyzer(orders_graph).analyze("table", "order", "modify")
    assert isinstance(result, ImpactNotFound)
    assert result.error == "table 'order' not found in lineage graph"
    assert "Did you mean 'orders'?" in result.suggestions
    assert result.to_dict()["target"] == {"type": "table", "name": "order"}


def test_unknown_column_is_not_found(orders_graph):
    result = ImpactAnalyzer(orders_graph).analyze_column("orders", "missing")
    assert isinstance(result, ImpactNotFound)
    assert result.error == "column 'orders.missing' not found in lineage graph"


def test_similar_names_use_close_spellings(orders_graph):
    assert find_similar_names(orders_graph, "ordres") == ["orders"]
    assert find_similar_names(orders_graph, "") == []


@pytest.mark.parametrize("change_type", list(ChangeType))
def test_severity_is_monotonic(change_type):
    previous = Severity.LOW
    for count in range(0, 30):
        severity = classify_severity(ImpactSummary(total_affected=count, views_affected=count // 2), change_type)
        assert severity >= previous
        previous = severity
    assert previous == Severity.CRITICAL


def test_drop_with_consumers_is_at_least_medium():
    summary = ImpactSummary(total_affected=1, external_affected=1)
    assert classify_severity(summary, ChangeType.MODIFY) == Severity.LOW
    assert classify_severity(summary, ChangeType.DROP) == Severity.MEDIUM
