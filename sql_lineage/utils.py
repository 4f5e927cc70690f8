# -*- coding: utf-8 -*-
import math
from typing import Any, Dict, Optional

from sql_lineage import config

STRUCTURAL_TYPES = ('table', 'view', 'cte', 'external')
COLUMN_TYPE = 'column'

# Hard cap on traversal depth, regardless of what a caller asks for
MAX_DEPTH = 20


class NameUtils:
    """A collection of static utility methods for handling node names and IDs."""

    _normalize_enabled = getattr(config, 'NORMALIZE_NAMES', True)

    @classmethod
    def with_normalization(cls, enabled: bool) -> type:
        """A NameUtils variant with its own normalization switch; the class default is left alone."""
        if enabled == cls._normalize_enabled:
            return cls
        return type(cls.__name__, (cls,), {'_normalize_enabled': enabled})

    @classmethod
    def normalize_name(cls, name: Optional[str]) -> Optional[str]:
        """Converts the name to lowercase if normalization is enabled."""
        if cls._normalize_enabled and name:
            return name.lower()
        return name

    @classmethod
    def qualified_key(cls, name: str, schema: Optional[str] = None) -> str:
        """Builds the 'schema.name' (or bare 'name') key used inside node IDs."""
        if not name:
            raise ValueError("A relation name is required to build a qualified key")
        name_norm = cls.normalize_name(name)
        if schema:
            return f"{cls.normalize_name(schema)}.{name_norm}"
        return name_norm

    @classmethod
    def format_node_id(cls, node_type: str, name: Optional[str] = None, schema: Optional[str] = None,
                       column: Optional[str] = None, owner_id: Optional[str] = None) -> str:
        """Generates a deterministic ID for a graph node with optional normalization."""
        if node_type in STRUCTURAL_TYPES:
            if not name:
                raise ValueError(f"Name is required for {node_type} node: schema='{schema}', name='{name}'")
            return f"{node_type}:{cls.qualified_key(name, schema)}"
        elif node_type == COLUMN_TYPE:
            if not owner_id or not column:
                raise ValueError(f"Owner ID and column are required: owner_id='{owner_id}', column='{column}'")
            return f"{COLUMN_TYPE}:{owner_id}.{cls.normalize_name(column)}"
        else:
            raise ValueError(f"Unknown node type: {node_type}")

    @classmethod
    def format_cte_id(cls, name: str, file_path: str, statement_index: int) -> str:
        """
        CTEs are scoped to the statement defining them, so the id carries the
        file and statement index: ``cte:models/report.sql#0.base``.
        """
        if not name:
            raise ValueError(f"Name is required for cte node defined in {file_path}#{statement_index}")
        return f"cte:{file_path}#{statement_index}.{cls.normalize_name(name)}"

    @classmethod
    def parse_node_id(cls, node_id: str) -> Dict[str, Optional[str]]:
        """Parses the node ID into its components."""
        if not isinstance(node_id, str):
            raise ValueError(f"Cannot parse node ID: Expected string, got {type(node_id)} ({node_id})")

        parts = node_id.split(":", 1)
        if len(parts) != 2 or not parts[1]:
            raise ValueError(f"Cannot parse node ID: {node_id}. Invalid format.")

        node_type, full_name = parts
        if node_type in STRUCTURAL_TYPES:
            schema, _, name = full_name.rpartition('.')
            return {"type": node_type, "schema": schema or None, "name": name, "column": None, "owner_id": None}
        elif node_type == COLUMN_TYPE:
            owner_id, _, column = full_name.rpartition('.')
            if not owner_id or not column:
                raise ValueError(f"Cannot parse column node ID: {node_id}. Expected 'column:<owner id>.<column>'")
            owner = cls.parse_node_id(owner_id)
            return {"type": node_type, "schema": owner["schema"], "name": owner["name"], "column": column,
                    "owner_id": owner_id}
        else:
            raise ValueError(f"Cannot parse node ID: Unknown type '{node_type}' in {node_id}")


def normalize_depth(value: Any, default: int = config.DEFAULT_LINEAGE_DEPTH) -> int:
    """
    Turns a requested traversal depth into a usable hop count.

    Non-numeric, non-finite and < 1 values fall back to ``default``; everything
    else is floored and capped at MAX_DEPTH. The default itself is clamped so the
    result is never unbounded.
    """
    fallback = min(max(int(default), 1), MAX_DEPTH)
    if isinstance(value, bool):
        return fallback
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(numeric):
        return fallback
    depth = math.floor(numeric)
    if depth < 1:
        return fallback
    return min(depth, MAX_DEPTH)
