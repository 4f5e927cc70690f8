import sys
from pathlib import Path

import pytest

# Ensure pytest can see run.py when started from the root project folder
sys.path.insert(0, str(Path(__file__).parent.parent))

from sql_lineage.builder import GraphBuilder
from sql_lineage.parser import SourceModelParser, SqlModelParser
from sql_lineage.settings import ConfigManager


@pytest.fixture
def test_env(tmp_path):
    """
    Creates a temporary workspace for each test.
    - tmp_path: built-in pytest fixture that provides a temporary directory.
    """
    sql_models_dir = tmp_path / "sql_models"
    sql_models_dir.mkdir()
    output_dir = tmp_path / "output"
    output_dir.mkdir()
    state_file = output_dir / "lineage_state.json"

    config_manager = ConfigManager(
        configure_logging=False,
        SQL_MODELS_DIR=sql_models_dir,
        STATE_FILE=state_file,
        SQL_SOURCE_MODELS=tmp_path / "sources.yml",
        SQL_DIALECT=None,
        REBUILD_DEBOUNCE_SECONDS=0,
    )

    yield {
        "tmp_path": tmp_path,
        "config_manager": config_manager,
        "sql_dir": sql_models_dir,
        "state_file": state_file,
    }


@pytest.fixture
def write_sql(test_env):
    """Writes SQL files into the workspace: write_sql({"views/a.sql": "..."})."""
    def _write(files):
        paths = []
        for name, content in files.items():
            path = test_env["sql_dir"] / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
            paths.append(path)
        return paths
    return _write


@pytest.fixture
def build_workspace(test_env, write_sql):
    """Writes the given files and returns a full BuildResult for the workspace."""
    def _build(files=None):
        if files:
            write_sql(files)
        cfg = test_env["config_manager"]
        sources = SourceModelParser(cfg).parse()
        return GraphBuilder(cfg).build(SqlModelParser(cfg).parse(), sources)
    return _build


@pytest.fixture
def build_graph(build_workspace):
    """Like build_workspace, but returns only the LineageGraph."""
    def _build(files=None):
        return build_workspace(files).graph
    return _build


ORDERS_SQL = """
CREATE TABLE orders (
    id INT,
    customer_id INT,
    total DECIMAL(10, 2),
    order_date DATE
);

CREATE VIEW daily_orders AS
SELECT order_date, SUM(total) AS total_revenue, COUNT(id) AS order_count
FROM orders
GROUP BY order_date;
"""


@pytest.fixture
def orders_graph(build_graph):
    """table:orders feeding view:daily_orders with an aggregated total_revenue column."""
    return build_graph({"orders.sql": ORDERS_SQL})
