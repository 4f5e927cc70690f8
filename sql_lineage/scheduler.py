# -*- coding: utf-8 -*-
"""
Snapshot publication and debounced, cancellable rebuilds.

Readers call ``SnapshotStore.current()`` once per request and keep using the
snapshot they got. The only mutable state is which snapshot is current; it is
swapped under a lock, and only by a build whose token has not been superseded.
"""
import logging
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

from sql_lineage import config
from sql_lineage.builder import BuildResult, GraphBuilder
from sql_lineage.errors import BuildCancelled
from sql_lineage.graph import LineageGraph
from sql_lineage.parser import SourceModelParser, SqlModelParser

logger = logging.getLogger('sql_lineage.scheduler')

CHANGED = 'changed'
REMOVED = 'removed'


class CancellationToken:
    """Marks one build generation; cancelled as soon as a newer file event arrives."""

    def __init__(self, generation: int):
        self.generation = generation
        self._cancelled = threading.Event()

    def cancel(self):
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def raise_if_cancelled(self):
        if self._cancelled.is_set():
            raise BuildCancelled(self.generation)


class SnapshotStore:
    def __init__(self, initial: Optional[BuildResult] = None):
        self._lock = threading.Lock()
        self._current = initial
        self._generation = 0

    def current(self) -> Optional[BuildResult]:
        with self._lock:
            return self._current

    @property
    def graph(self) -> LineageGraph:
        """The current graph, or an empty one before the first build."""
        result = self.current()
        return result.graph if result is not None else LineageGraph()

    def publish(self, result: BuildResult, token: Optional[CancellationToken] = None) -> bool:
        """Makes ``result`` current unless its build was superseded. Returns whether it was published."""
        with self._lock:
            if token is not None and (token.cancelled or token.generation < self._generation):
                logger.debug(f"Discarding superseded build generation {token.generation}")
                return False
            self._current = result
            if token is not None:
                self._generation = token.generation
            return True


class RebuildScheduler:
    """
    Coalesces ``(file_path, changed|removed)`` events into incremental rebuilds.

    Every event restarts the debounce timer and cancels the build in flight, if
    any. Only one build runs at a time: a timer that fires during a build leaves
    its events pending, and the build merges its own batch back into them when
    it is cancelled, then schedules the next run over the combined set.
    """

    def __init__(self, builder: GraphBuilder, parser: SqlModelParser, store: SnapshotStore,
                 debounce_seconds: float = config.REBUILD_DEBOUNCE_SECONDS,
                 timer_factory: Callable = threading.Timer,
                 source_parser: Optional[SourceModelParser] = None):
        self.builder = builder
        self.parser = parser
        self.store = store
        self.debounce_seconds = debounce_seconds
        self.source_parser = source_parser
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._pending: Dict[str, str] = {}
        self._timer = None
        self._token: Optional[CancellationToken] = None
        self._building = False
        self._closed = False
        self._generation = 0

    @property
    def pending(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._pending)

    def notify(self, file_path, change: str = CHANGED):
        if change not in (CHANGED, REMOVED):
            raise ValueError(f"Unknown file change '{change}', expected '{CHANGED}' or '{REMOVED}'")
        with self._lock:
            self._pending[str(file_path)] = change
            if self._token is not None:
                self._token.cancel()
            self._schedule()

    def flush(self) -> Optional[BuildResult]:
        """Runs pending work now instead of waiting for the timer."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        return self._run()

    def shutdown(self):
        with self._lock:
            self._closed = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if self._token is not None:
                self._token.cancel()

    def _schedule(self):
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self._timer_factory(self.debounce_seconds, self._run)
        self._timer.start()

    def _run(self) -> Optional[BuildResult]:
        with self._lock:
            if self._building:
                # The running build was cancelled by the event that started this timer
                self._timer = None
                return None
            if not self._pending:
                return None
            batch, self._pending = self._pending, {}
            self._generation += 1
            token = CancellationToken(self._generation)
            self._token = token
            self._building = True
            self._timer = None

        try:
            result = self._build(batch, token)
            published = self.store.publish(result, token)
        except BuildCancelled:
            published = False
            result = None
        finally:
            with self._lock:
                self._building = False
                if self._token is token:
                    self._token = None

        with self._lock:
            if not published:
                for path, change in batch.items():
                    self._pending.setdefault(path, change)
                logger.debug(f"Build generation {token.generation} superseded; {len(batch)} files requeued")
            if self._pending and self._timer is None and not self._closed:
                self._schedule()
        return result if published else None

    def _build(self, batch: Dict[str, str], token: CancellationToken) -> BuildResult:
        current = self.store.current()
        if current is None:
            logger.info("No published snapshot yet, building the whole workspace")
            sources = self.source_parser.parse() if self.source_parser is not None else ()
            return self.builder.build(self.parser.parse(), sources, token=token)

        changed = []
        removed: List[str] = []
        for path, change in sorted(batch.items()):
            token.raise_if_cancelled()
            file_path = Path(path)
            if change == REMOVED or not file_path.exists():
                removed.append(self.parser.file_key(file_path))
            else:
                changed.append(self.parser.parse_file(file_path))
        return self.builder.rebuild(current.state, changed, removed, token=token)
