"""Tests for the resource registry."""

import json
import time

import pytest

from arkstore.errors import AlreadyExists, CorruptRecord, InvalidPayload, NotFound
from arkstore.registry import RESOURCES_DIRNAME, ResourceRegistry
from arkstore.types import Resource, derive_id


class TestCreate:
    def test_create_returns_resource(self, registry):
        r = registry.create("http://google.com", {"title": "Google", "desc": "Search"})
        assert r.id == derive_id("http://google.com")
        assert r.defining_key == "http://google.com"
        assert r.title == "Google"
        assert r.display_fields == {"title": "Google", "desc": "Search"}
        assert r.created_at == r.modified_at

    def test_create_persists_json(self, registry, ark_dir):
        r = registry.create("http://google.com", {"title": "Google"})
        data = json.loads((ark_dir / RESOURCES_DIRNAME / f"{r.id}.json").read_text())
        assert data["defining_key"] == "http://google.com"
        assert Resource.from_dict(data) == r

    def test_str(self, registry):
        r = registry.create("http://google.com", {"title": "Google"})
        assert str(r) == f"{r.id[:12]} Google <http://google.com>"

    def test_duplicate_rejected(self, registry):
        registry.create("http://google.com")
        with pytest.raises(AlreadyExists, match="already exists"):
            registry.create("http://google.com")

    def test_equivalent_key_is_duplicate(self, registry):
        registry.create("http://google.com")
        with pytest.raises(AlreadyExists):
            registry.create("HTTP://Google.com:80/")

    def test_duplicate_keeps_original(self, registry):
        first = registry.create("http://google.com", {"title": "First"})
        with pytest.raises(AlreadyExists):
            registry.create("http://google.com", {"title": "Second"})
        assert registry.get(first.id).title == "First"

    @pytest.mark.parametrize("key", ["", "   ", None])
    def test_empty_key(self, registry, key):
        with pytest.raises(InvalidPayload):
            registry.create(key)

    def test_none_fields_dropped(self, registry):
        r = registry.create("/tmp/a.txt", {"title": "A", "desc": None})
        assert r.display_fields == {"title": "A"}

    def test_non_string_field_rejected(self, registry):
        with pytest.raises(InvalidPayload):
            registry.create("/tmp/a.txt", {"title": 5})
        assert registry.count() == 0


class TestResolve:
    def test_by_id(self, registry):
        r = registry.create("http://google.com")
        assert registry.resolve(r.id) == r

    def test_by_key(self, registry):
        r = registry.create("http://google.com")
        assert registry.resolve("http://google.com") == r

    def test_by_equivalent_key(self, registry):
        r = registry.create("http://google.com")
        assert registry.resolve("HTTP://GOOGLE.COM/") == r

    def test_unknown(self, registry):
        with pytest.raises(NotFound):
            registry.resolve("http://nowhere.example")

    def test_unknown_id(self, registry):
        with pytest.raises(NotFound):
            registry.resolve("0" * 64)

    def test_empty(self, registry):
        with pytest.raises(NotFound):
            registry.resolve("  ")

    def test_malformed_port_not_found(self, registry):
        with pytest.raises(NotFound):
            registry.resolve("http://example.com:abc/")

    def test_malformed_port_create(self, registry):
        r = registry.create("http://example.com:99999/")
        assert registry.resolve("HTTP://Example.com:99999") == r

    def test_get_non_id(self, registry):
        assert registry.get("http://google.com") is None


class TestTouchAndUpdate:
    def test_touch_advances_modified(self, registry):
        r = registry.create("http://google.com")
        time.sleep(0.002)
        touched = registry.touch(r.id)
        assert touched.modified_at > r.modified_at
        assert touched.created_at == r.created_at
        assert registry.get(r.id).modified_at == touched.modified_at

    def test_touch_never_goes_back(self, registry, ark_dir):
        r = registry.create("http://google.com")
        path = ark_dir / RESOURCES_DIRNAME / f"{r.id}.json"
        data = json.loads(path.read_text())
        data["modified_at"] = "2999-01-01T00:00:00.000000"
        path.write_text(json.dumps(data))
        assert registry.touch(r.id).modified_at == "2999-01-01T00:00:00.000000"

    def test_touch_missing(self, registry):
        with pytest.raises(NotFound):
            registry.touch(derive_id("http://google.com"))

    def test_update_merges_fields(self, registry):
        r = registry.create("http://google.com", {"title": "Google", "desc": "Search"})
        updated = registry.update(r.id, {"title": "Google Search", "desc": ""})
        assert updated.display_fields == {"title": "Google Search"}
        assert registry.get(r.id).display_fields == {"title": "Google Search"}

    def test_update_keeps_identity(self, registry):
        r = registry.create("http://google.com")
        updated = registry.update(r.id, {"title": "G"})
        assert (updated.id, updated.defining_key, updated.created_at) == (r.id, r.defining_key, r.created_at)


class TestListing:
    def test_empty(self, registry):
        assert list(registry.list_all()) == []
        assert registry.count() == 0
        assert registry.ids() == []

    def test_creation_order(self, registry):
        keys = ["http://c.example", "http://a.example", "http://b.example"]
        for key in keys:
            registry.create(key)
        assert [r.defining_key for r in registry.list_all()] == keys
        assert registry.count() == 3

    def test_ignores_stray_files(self, registry, ark_dir):
        registry.create("http://google.com")
        resources = ark_dir / RESOURCES_DIRNAME
        (resources / "notes.json").write_text("{}")
        (resources / ".tmp-xyz").write_text("partial")
        assert registry.count() == 1

    def test_corrupt_resource(self, registry, ark_dir):
        r = registry.create("http://google.com")
        (ark_dir / RESOURCES_DIRNAME / f"{r.id}.json").write_text("not json")
        with pytest.raises(CorruptRecord):
            list(registry.list_all())

    def test_misfiled_resource(self, registry, ark_dir):
        r = registry.create("http://google.com")
        other = derive_id("http://example.com")
        resources = ark_dir / RESOURCES_DIRNAME
        (resources / f"{r.id}.json").rename(resources / f"{other}.json")
        with pytest.raises(CorruptRecord, match="holds resource"):
            registry.get(other)

    def test_shared_between_instances(self, registry, ark_dir):
        r = registry.create("http://google.com")
        assert ResourceRegistry(ark_dir).resolve("http://google.com") == r
