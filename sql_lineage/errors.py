# -*- coding: utf-8 -*-
"""Exceptions raised by the lineage engine.

Query operations never raise these across the request boundary; they return
typed result values instead. Exceptions are reserved for invalid configuration,
malformed ids passed by calling code, and superseded builds.
"""


class LineageError(Exception):
    """Base class for all lineage engine errors."""


class ConfigError(LineageError, ValueError):
    """A required setting is missing or has an unusable value."""


class BuildCancelled(LineageError):
    """A build was superseded by a newer file change and must be discarded."""

    def __init__(self, generation: int):
        super().__init__(f"Build generation {generation} was superseded")
        self.generation = generation
