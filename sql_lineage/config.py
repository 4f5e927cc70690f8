# config.py
from pathlib import Path

# Folder containing the SQL sources to index. An absolute path is safer when the
# tool is started from a different location; a relative path is resolved from the
# working directory.
# Example: SQL_MODELS_DIR = Path("/path/to/your/sql_models")
SQL_MODELS_DIR = Path("./sql_models")

# Optional YAML file listing base tables (and their columns) that are not created
# by any SQL file, so they show up as tables instead of external references
SQL_SOURCE_MODELS = Path("sources.yml")

# File to save the lineage graph state between runs
STATE_FILE = Path("./lineage_state.json")

# SQL dialect passed to sqlglot (important for correct parsing)
# Examples: "postgres", "mysql", "snowflake", "bigquery", "redshift"
# None uses sqlglot's default dialect
SQL_DIALECT = None

# File extension for SQL files
SQL_FILE_EXTENSION = ".sql"

# Lower-case identifiers when building node ids
NORMALIZE_NAMES = True

# Lineage traversal
DEFAULT_LINEAGE_DEPTH = 5      # used when a request carries no usable depth
IMPACT_MAX_DEPTH = 20          # how far impact analysis follows consumers
MAX_COLUMN_PATHS = 200         # fan-out cap for a single column trace

# Incremental rebuilds: quiet period before a burst of file events is processed
REBUILD_DEBOUNCE_SECONDS = 0.5

# Impact severity bands, compared against the weighted impact score
SEVERITY_BANDS = {
    "medium": 3,
    "high": 10,
    "critical": 20,
}

# Logging settings
LOG_LEVEL = "INFO"
LOG_FORMAT = '%(levelname)s - %(message)s'
