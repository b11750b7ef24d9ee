#!/usr/bin/env python3
"""Coordinate reference system registry

A registry is created alongside each catalog and passed to whatever needs to
parse or compare CRS definitions, instead of relying on process-wide state.
"""
from __future__ import annotations

import logging
import threading

import pyproj
import pyproj.exceptions

logger = logging.getLogger(__name__)


class CRSRegistry:
    """Cache of parsed CRS definitions keyed by their user input string"""

    def __init__(self):
        self._cache: dict[str, pyproj.CRS | None] = {}
        self._lock = threading.Lock()

    def parse(self, definition: str | None) -> pyproj.CRS | None:
        """Parse a WKT, PROJ or "EPSG:n" definition, None if unparseable"""
        if not definition:
            return None
        with self._lock:
            if definition in self._cache:
                return self._cache[definition]
        try:
            crs = pyproj.CRS.from_user_input(definition)
        except pyproj.exceptions.CRSError as e:
            logger.warning("Could not parse CRS %r: %s", definition[:80], e)
            crs = None
        with self._lock:
            self._cache[definition] = crs
        return crs

    def equals_ignore_metadata(self, a: str | None, b: str | None) -> bool:
        """Compare two CRS definitions ignoring names, identifiers and axis order"""
        if a == b:
            return True
        if not a or not b:
            return False
        crs_a, crs_b = self.parse(a), self.parse(b)
        if crs_a is None or crs_b is None:
            return a.strip() == b.strip()
        return crs_a.equals(crs_b, ignore_axis_order=True)

    def to_wkt(self, definition: str | None) -> str | None:
        crs = self.parse(definition)
        if crs is None:
            return definition
        return crs.to_wkt()

    def clear(self):
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
