# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

import os
import time

import pytest

from loyaltyflow.core.cache import DefinitionCache, get_cache
from loyaltyflow.core.exceptions import DefinitionError


def test_cache_basic(tmp_path):
    """Test basic cache operations"""
    cache = DefinitionCache(max_size=10)
    path = tmp_path / "welcome.yaml"
    path.write_text("workflow_id: welcome\nentry_node_id: T\n")

    # First access - should parse
    result = cache.load_or_parse(path)
    assert result == {"workflow_id": "welcome", "entry_node_id": "T"}
    assert cache.size() == 1

    # Second access - should use cache
    assert cache.load_or_parse(path) is result
    assert cache.size() == 1


def test_cache_json_file(tmp_path):
    """Test .json files are parsed as JSON"""
    cache = DefinitionCache()
    path = tmp_path / "welcome.json"
    path.write_text('{"workflow_id": "welcome"}')
    assert cache.load_or_parse(path) == {"workflow_id": "welcome"}


def test_cache_invalidation(tmp_path):
    """Test cache invalidation on file modification"""
    cache = DefinitionCache()
    path = tmp_path / "welcome.yaml"
    path.write_text("workflow_id: v1")

    assert cache.load_or_parse(path)["workflow_id"] == "v1"

    # Ensure mtime changes
    time.sleep(0.05)
    path.write_text("workflow_id: v2")
    stat = path.stat()
    os.utime(path, (stat.st_atime, stat.st_mtime + 10))

    assert cache.load_or_parse(path)["workflow_id"] == "v2"


def test_cache_lru_eviction(tmp_path):
    """Test LRU eviction when cache is full"""
    cache = DefinitionCache(max_size=2)
    files = []
    for i in range(3):
        path = tmp_path / f"file{i}.yaml"
        path.write_text(f"workflow_id: file{i}")
        files.append(path)

    for path in files:
        cache.load_or_parse(path)

    assert cache.size() == 2
    # First file should be evicted
    assert cache.get(files[0]) is None
    assert cache.get(files[2]) is not None


def test_cache_invalidate_and_clear(tmp_path):
    cache = DefinitionCache()
    path = tmp_path / "a.yaml"
    path.write_text("workflow_id: a")
    cache.load_or_parse(path)

    cache.invalidate(path)
    assert cache.get(path) is None

    cache.load_or_parse(path)
    cache.clear()
    assert cache.size() == 0


@pytest.mark.parametrize(
    "name,content",
    [
        ("list.yaml", "- a\n- b\n"),
        ("broken.yaml", "workflow_id: [unclosed\n"),
        ("broken.json", "{not json"),
    ],
)
def test_cache_rejects_bad_files(tmp_path, name, content):
    """Test unparsable files and non-mapping documents"""
    path = tmp_path / name
    path.write_text(content)
    with pytest.raises(DefinitionError):
        DefinitionCache().load_or_parse(path)


def test_cache_missing_file(tmp_path):
    with pytest.raises(DefinitionError):
        DefinitionCache().load_or_parse(tmp_path / "missing.yaml")


def test_global_cache():
    """Test global cache singleton"""
    assert get_cache() is get_cache()
