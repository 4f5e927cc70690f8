# -*- coding: utf-8 -*-
import argparse
import logging
import sys
from typing import Any, Dict, List, Optional

from rich.console import Console

from sql_lineage.builder import BuildResult, GraphBuilder
from sql_lineage.changes import ChangeDetector
from sql_lineage.graph import LineageGraph
from sql_lineage.parser import SourceModelParser, SqlModelParser
from sql_lineage.protocol import MessageHandler
from sql_lineage.settings import ConfigManager


class SQLLineage:
    """Orchestrates parsing, graph building, change reporting and queries."""

    def __init__(self, cfg: Optional[ConfigManager] = None):
        self.config = cfg or ConfigManager()
        self.logger = logging.getLogger('sql_lineage')
        self.source_parser = SourceModelParser(self.config)
        self.sql_parser = SqlModelParser(self.config)
        self.builder = GraphBuilder(self.config)

    def build(self) -> BuildResult:
        """Parses every source and SQL file and builds a fresh snapshot."""
        sources = self.source_parser.parse()
        parsed_files = self.sql_parser.parse()
        return self.builder.build(parsed_files, sources)

    def run(self) -> BuildResult:
        """Executes the full build pipeline and saves the new state."""
        self.logger.info("=" * 50)
        self.logger.info("Starting SQL lineage build...")
        self.logger.info(f"Models directory: {self.config.sql_models_dir}")
        self.logger.info(f"State file: {self.config.state_file}")
        self.logger.info(f"SQL dialect: {self.config.sql_dialect}")
        self.logger.info("=" * 50)

        old_graph = LineageGraph.load_state(self.config.state_file)
        result = self.build()
        for diagnostic in result.diagnostics:
            self.logger.warning(f"{diagnostic.file_path}: {diagnostic.message}")

        ChangeDetector(old_graph, result.graph).report_changes()
        result.graph.save_state(self.config.state_file)
        self.logger.info("Lineage build completed successfully.")
        return result

    def current_graph(self) -> LineageGraph:
        """The saved snapshot if there is one, otherwise a fresh build."""
        graph = LineageGraph.load_state(self.config.state_file)
        if graph is None:
            graph = self.build().graph
        return graph

    def query(self, message: Dict[str, Any]) -> Dict[str, Any]:
        return MessageHandler(self.current_graph(), self.config).handle(message)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='sql-lineage', description="SQL lineage graph builder and explorer")
    parser.add_argument('--settings', help="YAML file overriding config values")
    parser.add_argument('--models-dir', help="Directory with SQL models")
    parser.add_argument('--state-file', help="Where the lineage graph is saved")
    parser.add_argument('--dialect', help="sqlglot dialect used to parse SQL files")
    subparsers = parser.add_subparsers(dest='command')

    subparsers.add_parser('build', help="Build the graph, report changes and save state")

    for name in ('upstream', 'downstream'):
        sub = subparsers.add_parser(name, help=f"List {name} dependencies of a node")
        sub.add_argument('node_id')
        sub.add_argument('--depth', type=int)

    column = subparsers.add_parser('column', help="Trace one column up and down")
    column.add_argument('table_id')
    column.add_argument('column_name')

    impact = subparsers.add_parser('impact', help="Analyze the impact of a change")
    impact.add_argument('name')
    impact.add_argument('--type', default='table', choices=['table', 'view', 'column'])
    impact.add_argument('--change', default='modify', choices=['modify', 'drop', 'rename'])

    explore = subparsers.add_parser('explore', help="Show details of a table or view")
    explore.add_argument('table_name')

    search = subparsers.add_parser('search', help="Search tables and views by name")
    search.add_argument('query')
    return parser


def to_message(args: argparse.Namespace) -> Optional[Dict[str, Any]]:
    if args.command == 'upstream':
        return {'command': 'getUpstream', 'nodeId': args.node_id, 'depth': args.depth}
    if args.command == 'downstream':
        return {'command': 'getDownstream', 'nodeId': args.node_id, 'depth': args.depth}
    if args.command == 'column':
        return {'command': 'selectColumn', 'tableId': args.table_id, 'columnName': args.column_name}
    if args.command == 'impact':
        return {'command': 'analyzeImpact', 'type': args.type, 'name': args.name, 'changeType': args.change}
    if args.command == 'explore':
        return {'command': 'exploreTable', 'tableName': args.table_name}
    if args.command == 'search':
        return {'command': 'searchLineageTables', 'query': args.query}
    return None


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    overrides = {}
    if args.models_dir:
        overrides['SQL_MODELS_DIR'] = args.models_dir
    if args.state_file:
        overrides['STATE_FILE'] = args.state_file
    if args.dialect:
        overrides['SQL_DIALECT'] = args.dialect

    app = SQLLineage(ConfigManager(settings_file=args.settings, **overrides))
    message = to_message(args)
    if message is None:
        app.run()
        return 0

    response = app.query(message)
    Console().print_json(data=response)
    return 1 if 'error' in response else 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except Exception as e:
        logging.getLogger('sql_lineage').critical(f"A critical error occurred: {e}", exc_info=True)
        sys.exit(1)
