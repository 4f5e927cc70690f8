# -*- coding: utf-8 -*-
"""Cross-file SQL lineage graph: build it from SQL files, then ask what feeds what and what breaks."""
from sql_lineage.builder import BuildResult, BuildState, GraphBuilder
from sql_lineage.column_lineage import ColumnLineageResolver
from sql_lineage.flow import FlowAnalyzer
from sql_lineage.graph import LineageGraph
from sql_lineage.impact import ImpactAnalyzer, classify_severity
from sql_lineage.protocol import MessageHandler
from sql_lineage.settings import ConfigManager
from sql_lineage.utils import NameUtils, normalize_depth

__version__ = "0.1.0"

__all__ = [
    'BuildResult',
    'BuildState',
    'ColumnLineageResolver',
    'ConfigManager',
    'FlowAnalyzer',
    'GraphBuilder',
    'ImpactAnalyzer',
    'LineageGraph',
    'MessageHandler',
    'NameUtils',
    'classify_severity',
    'normalize_depth',
]
