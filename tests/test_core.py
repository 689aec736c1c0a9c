"""
Tests for the Store facade: resources, attributes, maintenance and lifecycle.
"""

import json
import os
import time

import pytest

from arkstore import (
    AlreadyExists,
    AttributeKind,
    InvalidPayload,
    NotFound,
    Store,
    derive_id,
    discover_root,
    open_store,
)
from arkstore.api import ARK_FOLDER
from arkstore.errors import log_exception
from arkstore.registry import RESOURCES_DIRNAME


class TestLayout:
    def test_creates_folders(self, store, tmp_path):
        ark = tmp_path / ARK_FOLDER
        assert (ark / "user").is_dir()
        assert (ark / "cache" / "metadata").is_dir()
        assert (ark / "cache" / "previews").is_dir()
        assert (ark / "ark.toml").is_file()

    def test_reopen(self, tmp_path):
        with Store(tmp_path) as first:
            r = first.create("http://google.com")
            first.append(r.id, "tags", ["a"])
        with Store(tmp_path) as second:
            assert second.read_current("http://google.com", "tags") == {"a"}

    def test_repr(self, store, tmp_path):
        assert repr(store) == f"Store({str(tmp_path.resolve())!r})"


class TestBookmarkScenario:
    """Create a link, tag it twice, score it twice."""

    def test_tags_and_scores(self, store):
        r = store.create("http://google.com", {"title": "Google", "desc": "Search engine"})
        assert r.id == derive_id("http://google.com")

        store.append("http://google.com", "tags", {"search", "engine"})
        store.append(r.id, AttributeKind.TAG_SET, {"engine", "web"})
        assert store.read_current(r.id, "tags") == frozenset({"search", "engine", "web"})

        store.append(r.id, "scores", 10)
        store.append(r.id, "scores", 15)
        assert store.read_current(r.id, "scores") == 15
        assert [v.version_number for v in store.list_versions(r.id, "scores")] == [1, 2]

    def test_append_touches_resource(self, store):
        r = store.create("http://google.com")
        time.sleep(0.002)
        store.append(r.id, "properties", {"lang": "en"})
        assert store.resolve(r.id).modified_at > r.modified_at

    def test_append_text_payload(self, store):
        r = store.create("/home/me/paper.pdf")
        store.append(r.id, "properties", "lang=en,year=2021", fmt="raw")
        store.append(r.id, "properties", '{"year": 2022}', fmt="json")
        store.append(r.id, "tags", "to-read, pdf", fmt="raw")
        assert store.read_current(r.id, "properties") == {"lang": "en", "year": 2022}
        assert store.read_current(r.id, "tags") == {"to-read", "pdf"}

    def test_append_unknown_resource(self, store):
        with pytest.raises(NotFound):
            store.append("http://nowhere.example", "tags", ["a"])
        assert store.list_resources("tags") == []

    def test_invalid_payload_leaves_no_trace(self, store):
        r = store.create("http://google.com")
        with pytest.raises(InvalidPayload):
            store.append(r.id, "scores", "ten", fmt="raw")
        assert store.list_versions(r.id, "scores") == []
        assert store.resolve(r.id).modified_at == r.modified_at

    def test_read_without_history(self, store):
        r = store.create("http://google.com")
        with pytest.raises(NotFound):
            store.read_current(r.id, "scores")

    def test_duplicate_create(self, store):
        store.create("http://google.com")
        with pytest.raises(AlreadyExists):
            store.create("http://google.com/")

    def test_update_display_fields(self, store):
        store.create("http://google.com", {"title": "Google"})
        updated = store.update("http://google.com", {"desc": "Search"})
        assert updated.display_fields == {"title": "Google", "desc": "Search"}

    def test_list_all(self, store):
        store.create("http://b.example")
        store.create("http://a.example")
        assert [r.defining_key for r in store.list_all()] == ["http://b.example", "http://a.example"]

    def test_list_resources(self, store):
        a = store.create("http://a.example")
        store.create("http://b.example")
        store.append(a.id, "scores", 1)
        assert store.list_resources("scores") == [a.id]


class TestBackup:
    def test_backup_copies_store(self, store, tmp_path):
        r = store.create("http://google.com")
        store.append(r.id, "tags", ["a"])
        target = store.backup(tmp_path / "backups")
        assert target.parent == tmp_path / "backups"
        assert target.name.isdigit()
        copied = target / ARK_FOLDER
        assert (copied / RESOURCES_DIRNAME / f"{r.id}.json").is_file()
        assert (copied / "user" / "tags" / r.id / "1").is_file()
        assert not (copied / "user" / "tags" / r.id / ".lock").exists()

    def test_backup_same_second(self, store, tmp_path, monkeypatch):
        monkeypatch.setattr(time, "time", lambda: 1700000000.5)
        store.backup(tmp_path / "backups")
        with pytest.raises(AlreadyExists):
            store.backup(tmp_path / "backups")


class TestCollisions:
    def _misfile(self, store, key, as_key):
        """Store a resource for key under the id derived from as_key."""
        r = store.create(key)
        resources = store.ark_dir / RESOURCES_DIRNAME
        other = derive_id(as_key)
        data = json.loads((resources / f"{r.id}.json").read_text())
        data["id"] = other
        (resources / f"{other}.json").write_text(json.dumps(data))
        return r

    def test_none(self, store):
        store.create("http://a.example")
        store.create("/tmp/b.txt")
        assert store.collisions() == {}

    def test_mismatched_id(self, store):
        r = store.create("http://google.com")
        resources = store.ark_dir / RESOURCES_DIRNAME
        stale = derive_id("http://old-normalization.example")
        data = json.loads((resources / f"{r.id}.json").read_text())
        data["id"] = stale
        (resources / f"{r.id}.json").unlink()
        (resources / f"{stale}.json").write_text(json.dumps(data))
        assert store.collisions() == {r.id: ["http://google.com"]}

    def test_duplicate_keys(self, store):
        r = self._misfile(store, "http://google.com", "http://elsewhere.example")
        report = store.collisions()
        assert list(report) == [r.id]
        assert report[r.id] == ["http://google.com", "http://google.com"]


class TestDiscovery:
    def test_discover_from_subfolder(self, tmp_path):
        Store(tmp_path).close()
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert discover_root(nested) == tmp_path.resolve()

    def test_discover_none(self, tmp_path):
        lonely = tmp_path / "lonely"
        lonely.mkdir()
        assert discover_root(lonely) is None

    def test_open_store_from_cwd(self, tmp_path, monkeypatch):
        Store(tmp_path).close()
        nested = tmp_path / "docs"
        nested.mkdir()
        monkeypatch.chdir(nested)
        with open_store() as store:
            assert store.root == tmp_path.resolve()

    def test_open_store_missing(self, tmp_path, monkeypatch):
        lonely = tmp_path / "lonely"
        lonely.mkdir()
        monkeypatch.chdir(lonely)
        with pytest.raises(NotFound):
            open_store()


class TestLogs:
    def test_ops_log_records_writes(self, tmp_path):
        with Store(tmp_path) as store:
            r = store.create("http://google.com")
            store.append(r.id, "tags", ["a"])
        text = (tmp_path / ARK_FOLDER / "ark-ops.log").read_text()
        assert "Created resource" in text
        assert "Appended tag-set v1" in text

    def test_close_detaches_handler(self, tmp_path):
        import logging
        store = Store(tmp_path)
        before = len(logging.getLogger("arkstore").handlers)
        store.close()
        store.close()
        assert len(logging.getLogger("arkstore").handlers) == before - 1

    def test_log_exception(self, tmp_path):
        try:
            raise RuntimeError("disk on fire")
        except RuntimeError as e:
            path = log_exception(e, "file append", root=tmp_path)
        assert path == tmp_path / ARK_FOLDER / "ark-errors.log"
        text = path.read_text()
        assert "file append" in text
        assert "RuntimeError: disk on fire" in text
        assert oct(os.stat(path).st_mode & 0o777) == oct(0o600)

    def test_log_exception_default_root(self, tmp_path):
        path = log_exception(ValueError("x"))
        assert path == tmp_path / ARK_FOLDER / "ark-errors.log"
