# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Definition file cache for LoyaltyFlow.
Caches parsed YAML/JSON workflow sources so repeated publishes and
validations of the same file skip parsing.
"""

import json
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml

from .exceptions import DefinitionError

PathLike = Union[str, Path]


class DefinitionCache:
    """
    LRU cache for parsed definition files.

    Entries are invalidated when the file's modification time changes.
    """

    def __init__(self, max_size: int = 100):
        """
        Args:
            max_size: Maximum number of cached files
        """
        self.max_size = max_size
        self._cache: "OrderedDict[str, Tuple[float, Dict[str, Any]]]" = OrderedDict()

    @staticmethod
    def _key(file_path: PathLike) -> str:
        return str(Path(file_path).resolve())

    def get(self, file_path: PathLike) -> Optional[Dict[str, Any]]:
        """
        Get a parsed definition from cache.

        Returns:
            Parsed definition or None if not cached, missing or modified
        """
        path = Path(file_path)
        if not path.exists():
            return None

        key = self._key(path)
        entry = self._cache.get(key)
        if entry is None or entry[0] != path.stat().st_mtime:
            return None

        self._cache.move_to_end(key)
        return entry[1]

    def put(self, file_path: PathLike, data: Dict[str, Any]):
        """Cache a parsed definition"""
        path = Path(file_path)
        mtime = path.stat().st_mtime if path.exists() else 0.0
        key = self._key(path)

        self._cache[key] = (mtime, data)
        self._cache.move_to_end(key)

        # Evict oldest if needed
        while len(self._cache) > self.max_size:
            self._cache.popitem(last=False)

    def load_or_parse(self, file_path: PathLike) -> Dict[str, Any]:
        """
        Load from cache or parse a .yaml/.yml/.json file.

        Raises:
            DefinitionError: If the file is missing or not a mapping
        """
        cached = self.get(file_path)
        if cached is not None:
            return cached

        path = Path(file_path)
        if not path.exists():
            raise DefinitionError(f"Definition file not found: {path}")

        try:
            with open(path, "r", encoding="utf-8") as f:
                if path.suffix.lower() == ".json":
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise DefinitionError(f"Cannot parse definition file {path}: {e}", cause=e)

        if not isinstance(data, dict):
            raise DefinitionError(f"Definition file {path} must contain a mapping")

        self.put(path, data)
        return data

    def invalidate(self, file_path: PathLike):
        """Invalidate cache entry for a file"""
        self._cache.pop(self._key(file_path), None)

    def clear(self):
        """Clear all cache entries"""
        self._cache.clear()

    def size(self) -> int:
        """Get current cache size"""
        return len(self._cache)


_global_cache = DefinitionCache()


def get_cache() -> DefinitionCache:
    """Get global definition cache instance"""
    return _global_cache
