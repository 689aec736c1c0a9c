"""
Shared pytest fixtures for ark tests.

Every store lives in its own tmp_path root; nothing touches the home folder.
"""

from pathlib import Path

import pytest

from arkstore.api import Store
from arkstore.attribute_store import AttributeStore
from arkstore.config import StoreConfig
from arkstore.registry import ResourceRegistry


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch, tmp_path):
    """Keep error logs and root discovery inside the test's tmp_path."""
    monkeypatch.setenv("ARK_ROOT", str(tmp_path))
    monkeypatch.delenv("ARK_VERBOSE", raising=False)


@pytest.fixture
def store(tmp_path):
    """A fresh Store rooted at tmp_path."""
    s = Store(tmp_path)
    yield s
    s.close()


@pytest.fixture
def fast_store(tmp_path):
    """A Store whose locks give up quickly."""
    root = tmp_path / "fast"
    config = StoreConfig(path=root / ".ark", lock_timeout=0.2, lock_poll_interval=0.01)
    s = Store(root, config=config)
    yield s
    s.close()


@pytest.fixture
def ark_dir(tmp_path) -> Path:
    d = tmp_path / ".ark"
    d.mkdir()
    return d


@pytest.fixture
def registry(ark_dir):
    return ResourceRegistry(ark_dir)


@pytest.fixture
def attributes(ark_dir):
    return AttributeStore(ark_dir / "user")
