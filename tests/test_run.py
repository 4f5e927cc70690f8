import pytest

from run import SQLLineage, build_arg_parser, main, to_message
from sql_lineage.graph import LineageGraph

ORDERS_SQL = """
CREATE TABLE orders (id INT, total INT, order_date DATE);
CREATE VIEW daily_orders AS SELECT order_date, SUM(total) AS total_revenue FROM orders GROUP BY order_date;
"""


@pytest.fixture
def cli_args(test_env, write_sql):
    write_sql({"orders.sql": ORDERS_SQL})
    return ["--models-dir", str(test_env["sql_dir"]), "--state-file", str(test_env["state_file"])]


def test_build_saves_state(test_env, cli_args):
    assert main(cli_args + ["build"]) == 0
    graph = LineageGraph.load_state(test_env["state_file"])
    assert graph.has_node("view:daily_orders")


def test_query_subcommand_prints_json(cli_args, capsys):
    main(cli_args + ["build"])
    capsys.readouterr()

    assert main(cli_args + ["downstream", "table:orders", "--depth", "2"]) == 0
    out = capsys.readouterr().out
    assert '"command": "getDownstream"' in out
    assert '"id": "view:daily_orders"' in out


def test_run_reports_changes_against_previous_state(test_env, write_sql):
    write_sql({"orders.sql": ORDERS_SQL})
    app = SQLLineage(test_env["config_manager"])
    app.run()
    write_sql({"extra.sql": "CREATE VIEW big_days AS SELECT order_date FROM daily_orders WHERE total_revenue > 100"})
    result = app.run()
    assert result.graph.has_node("view:big_days")
    assert LineageGraph.load_state(test_env["state_file"]).has_node("view:big_days")


def test_query_without_saved_state_builds_on_demand(test_env, write_sql):
    write_sql({"orders.sql": ORDERS_SQL})
    response = SQLLineage(test_env["config_manager"]).query({"command": "exploreTable", "tableName": "orders"})
    assert response["data"]["table"]["id"] == "table:orders"


def test_arguments_map_to_protocol_messages():
    parser = build_arg_parser()
    assert to_message(parser.parse_args(["impact", "orders.total", "--type", "column", "--change", "drop"])) == {
        "command": "analyzeImpact", "type": "column", "name": "orders.total", "changeType": "drop"}
    assert to_message(parser.parse_args(["column", "view:daily_orders", "total_revenue"])) == {
        "command": "selectColumn", "tableId": "view:daily_orders", "columnName": "total_revenue"}
    assert to_message(parser.parse_args(["build"])) is None
