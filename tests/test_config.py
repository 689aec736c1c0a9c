"""Tests for store configuration (ark.toml)."""

import tomllib

import pytest

from arkstore.api import Store
from arkstore.config import (
    CONFIG_FILENAME,
    CONFIG_VERSION,
    StoreConfig,
    load_config,
    load_or_create_config,
    save_config,
)


class TestLoadOrCreate:
    def test_creates_defaults(self, ark_dir):
        config = load_or_create_config(ark_dir)
        assert config.config_path == ark_dir / CONFIG_FILENAME
        assert config.exists()
        assert config.version == CONFIG_VERSION
        assert config.lock_timeout == 10.0
        assert config.tag_match == "exact"

    def test_written_as_toml(self, ark_dir):
        load_or_create_config(ark_dir)
        with open(ark_dir / CONFIG_FILENAME, "rb") as f:
            data = tomllib.load(f)
        assert data["store"]["version"] == CONFIG_VERSION
        assert data["lock"] == {"timeout": 10.0, "poll_interval": 0.01}
        assert data["query"] == {"tag_match": "exact"}

    def test_loads_existing(self, ark_dir):
        first = load_or_create_config(ark_dir)
        second = load_or_create_config(ark_dir)
        assert second.created == first.created


class TestRoundTrip:
    def test_save_and_load(self, ark_dir):
        save_config(StoreConfig(path=ark_dir, lock_timeout=2.5, lock_poll_interval=0.05, tag_match="substring"))
        config = load_config(ark_dir)
        assert config.lock_timeout == 2.5
        assert config.lock_poll_interval == 0.05
        assert config.tag_match == "substring"

    def test_missing_sections_use_defaults(self, ark_dir):
        (ark_dir / CONFIG_FILENAME).write_text("[store]\nversion = 1\n")
        config = load_config(ark_dir)
        assert config.lock_timeout == 10.0
        assert config.tag_match == "exact"

    def test_save_creates_directory(self, tmp_path):
        ark_dir = tmp_path / "new" / ".ark"
        save_config(StoreConfig(path=ark_dir))
        assert (ark_dir / CONFIG_FILENAME).is_file()


class TestInvalid:
    def test_missing(self, ark_dir):
        with pytest.raises(FileNotFoundError):
            load_config(ark_dir)

    def test_malformed(self, ark_dir):
        (ark_dir / CONFIG_FILENAME).write_text("[store\nversion = ")
        with pytest.raises(ValueError, match="Invalid config"):
            load_config(ark_dir)

    def test_newer_version(self, ark_dir):
        (ark_dir / CONFIG_FILENAME).write_text(f"[store]\nversion = {CONFIG_VERSION + 1}\n")
        with pytest.raises(ValueError, match="newer"):
            load_config(ark_dir)

    def test_bad_tag_match(self, ark_dir):
        with pytest.raises(ValueError):
            StoreConfig(path=ark_dir, tag_match="fuzzy")
        (ark_dir / CONFIG_FILENAME).write_text('[query]\ntag_match = "fuzzy"\n')
        with pytest.raises(ValueError):
            load_config(ark_dir)

    def test_bad_lock_values(self, ark_dir):
        with pytest.raises(ValueError):
            StoreConfig(path=ark_dir, lock_timeout=-1)
        with pytest.raises(ValueError):
            StoreConfig(path=ark_dir, lock_poll_interval=0)


class TestStoreUsesConfig:
    def test_tag_match_from_file(self, tmp_path):
        ark_dir = tmp_path / ".ark"
        save_config(StoreConfig(path=ark_dir, tag_match="substring"))
        with Store(tmp_path) as store:
            r = store.create("http://google.com")
            store.append(r.id, "tags", ["engine"])
            assert len(store.query(filter_by_tag="eng")) == 1
            assert store.query(filter_by_tag="eng", tag_match="exact") == []

    def test_explicit_config_not_written(self, fast_store):
        assert fast_store.config.lock_timeout == 0.2
        assert not (fast_store.ark_dir / CONFIG_FILENAME).exists()
