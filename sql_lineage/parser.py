# -*- coding: utf-8 -*-
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Tuple

import sqlglot
import yaml
from sqlglot.errors import SqlglotError

from sql_lineage.models import FileDiagnostic
from sql_lineage.settings import ConfigManager
from sql_lineage.statements import AnyStatement, read_statement


@dataclass
class ParsedFile:
    """Statements read from one SQL file. A file that failed to parse has none."""
    file_path: str
    statements: List[AnyStatement] = field(default_factory=list)
    diagnostics: List[FileDiagnostic] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not any(diag.severity == 'error' for diag in self.diagnostics)


@dataclass(frozen=True)
class SourceDefinition:
    """A base table declared in the sources YAML file rather than in SQL."""
    name: str
    schema: Optional[str] = None
    columns: Tuple[Tuple[str, Optional[str]], ...] = ()


class ModelParser(ABC):
    """Abstract base class for model parsers."""
    def __init__(self, cfg: ConfigManager):
        self.config = cfg
        self.logger = logging.getLogger('sql_lineage.parser')

    @abstractmethod
    def parse(self) -> List[Any]:
        """Parses models and returns a list of model definitions."""
        pass


class SourceModelParser(ModelParser):
    """Parses source tables declared in a YAML file."""

    def parse(self) -> List[SourceDefinition]:
        """Parses the source YAML file and returns the declared source tables."""
        source_file = self.config.source_models_file
        if not source_file or not source_file.is_file():
            self.logger.info("Source models file not provided or not found. Skipping.")
            return []

        try:
            with source_file.open('r', encoding='utf-8') as file:
                source_definitions = yaml.safe_load(file) or {}
        except (OSError, yaml.YAMLError) as e:
            self.logger.error(f"Failed to load or parse sources file: {e}")
            return []

        if not isinstance(source_definitions, dict):
            self.logger.error(f"Sources file {source_file} must contain a mapping of tables to columns")
            return []
        self.logger.info(f"Loaded source tables: {list(source_definitions.keys())}")

        sources = []
        for table, columns in source_definitions.items():
            schema, _, table_name = str(table).rpartition('.')
            sources.append(SourceDefinition(
                name=table_name,
                schema=schema or None,
                columns=self._read_columns(table, columns),
            ))
        return sources

    def _read_columns(self, table: str, columns: Any) -> Tuple[Tuple[str, Optional[str]], ...]:
        if not columns:
            return ()
        if isinstance(columns, dict):
            return tuple((str(name), str(data_type) if data_type else None) for name, data_type in columns.items())
        if isinstance(columns, list):
            return tuple((str(name), None) for name in columns)
        self.logger.warning(f"Ignoring columns of source '{table}': expected a list or a mapping")
        return ()


class SqlModelParser(ModelParser):
    """Parses SQL files into the statement model, one ParsedFile per file."""

    def parse(self) -> List[ParsedFile]:
        """Finds and parses all SQL files in the configured directory."""
        sql_files = self._find_sql_files()
        if not sql_files:
            self.logger.warning("No SQL files found for analysis.")
            return []

        parsed_files = []
        total_files = len(sql_files)
        for processed, file_path in enumerate(sql_files, start=1):
            self.logger.info(f"[{processed}/{total_files}] Analyzing: {file_path}")
            parsed_files.append(self.parse_file(file_path))

        statements = sum(len(parsed.statements) for parsed in parsed_files)
        failed = sum(1 for parsed in parsed_files if not parsed.ok)
        self.logger.info(f"Parsed {statements} statements from {total_files} files ({failed} with errors).")
        return parsed_files

    def parse_file(self, file_path: Path, sql_content: Optional[str] = None) -> ParsedFile:
        """Parses one file. Read and parse failures become a diagnostic instead of an exception."""
        file_key = self.file_key(file_path)
        try:
            if sql_content is None:
                sql_content = Path(file_path).read_text(encoding='utf-8')
            expressions = sqlglot.parse(sql=sql_content, read=self.config.sql_dialect)
        except (OSError, UnicodeDecodeError, SqlglotError) as e:
            self.logger.warning(f"Error reading or parsing file {file_key}: {e}")
            return ParsedFile(file_key, diagnostics=[FileDiagnostic(file_key, str(e), _error_line(e))])

        parsed = ParsedFile(file_key)
        for expression in expressions:
            if expression is None:
                continue
            try:
                parsed.statements.append(read_statement(expression, self.config.sql_dialect))
            except Exception as e:
                self.logger.error(f"Error processing statement in {file_key}: {e}", exc_info=True)
                parsed.diagnostics.append(FileDiagnostic(file_key, f"Could not analyze statement: {e}",
                                                         severity='warning'))
        return parsed

    def file_key(self, file_path: Path) -> str:
        """Path used to attribute nodes and edges to a file: relative to the models dir when possible."""
        path = Path(file_path)
        try:
            return path.relative_to(self.config.sql_models_dir).as_posix()
        except ValueError:
            return path.as_posix()

    def _find_sql_files(self) -> List[Path]:
        """Recursively finds all SQL files in the directory."""
        self.logger.info(f"Searching for SQL files in: {self.config.sql_models_dir}")
        sql_files = sorted(self.config.sql_models_dir.rglob(f"*{self.config.sql_file_extension}"))
        self.logger.info(f"Found {len(sql_files)} SQL files.")
        return sql_files


def _error_line(error: Exception) -> Optional[int]:
    details = getattr(error, 'errors', None) or []
    for detail in details:
        line = detail.get('line') if isinstance(detail, dict) else None
        if line:
            return line
    return None
