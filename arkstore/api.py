"""
Core API for the ark store.

A Store is an explicit handle on one root folder. It wires the resource
registry, the attribute histories and the query engine together:

- create()/resolve(): resources by defining key or id
- append()/read_current()/list_versions(): typed, versioned attributes
- query(): the index view, filtered by tag and sorted by score
"""

import logging
import shutil
import time
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from .attribute_store import AttributeStore
from .config import StoreConfig, load_or_create_config
from .errors import AlreadyExists, NotFound
from .kinds import AttributeKind, PayloadFormat, rule_for
from .logging_config import configure_ops_log, remove_ops_log
from .query import DEFAULT_FIELDS, QueryEngine
from .registry import ResourceRegistry
from .types import Resource, ResourceId, VersionRecord, derive_id

logger = logging.getLogger(__name__)

ARK_FOLDER = ".ark"
USER_FOLDER = "user"
CACHE_FOLDER = "cache"
METADATA_FOLDER = "metadata"
PREVIEWS_FOLDER = "previews"


def discover_root(start: Optional[Union[str, Path]] = None) -> Optional[Path]:
    """
    Find the nearest folder at or above start that holds an .ark folder.

    Returns None if no ancestor has one.
    """
    path = Path(start if start is not None else Path.cwd()).resolve()
    for candidate in (path, *path.parents):
        if (candidate / ARK_FOLDER).is_dir():
            return candidate
    return None


class Store:
    """
    Handle on the ark store under one root folder.

    Example:
        store = Store("/data/bookmarks")
        r = store.create("http://google.com", {"title": "Google"})
        store.append(r.id, "tag-set", {"search", "engine"})
        store.read_current(r.id, "tag-set")   # frozenset({'search', 'engine'})
    """

    def __init__(
        self,
        root: Union[str, Path],
        *,
        config: Optional[StoreConfig] = None,
    ) -> None:
        """
        Open an existing store or create its folders.

        Args:
            root: Folder whose .ark subfolder holds the store
            config: Pre-loaded StoreConfig (skips reading ark.toml)
        """
        self._root = Path(root).resolve()
        self._ark_dir = self._root / ARK_FOLDER
        for sub in (
            Path(USER_FOLDER),
            Path(CACHE_FOLDER) / METADATA_FOLDER,
            Path(CACHE_FOLDER) / PREVIEWS_FOLDER,
        ):
            (self._ark_dir / sub).mkdir(parents=True, exist_ok=True)

        self._config = config if config is not None else load_or_create_config(self._ark_dir)

        # --- Persistent operations log ---
        self._ops_log_handler = configure_ops_log(self._ark_dir)

        lock_args = dict(
            lock_timeout=self._config.lock_timeout,
            lock_poll_interval=self._config.lock_poll_interval,
        )
        self._registry = ResourceRegistry(self._ark_dir, **lock_args)
        self._attributes = AttributeStore(
            self._ark_dir / USER_FOLDER,
            on_append=self._registry.touch,
            **lock_args,
        )
        self._query = QueryEngine(
            self._registry, self._attributes, tag_match=self._config.tag_match,
        )

    @property
    def root(self) -> Path:
        return self._root

    @property
    def ark_dir(self) -> Path:
        return self._ark_dir

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def registry(self) -> ResourceRegistry:
        return self._registry

    @property
    def attributes(self) -> AttributeStore:
        return self._attributes

    # -------------------------------------------------------------------------
    # Resources
    # -------------------------------------------------------------------------

    def create(self, defining_key: str, display_fields: Optional[dict[str, str]] = None) -> Resource:
        """Create a resource; raises AlreadyExists for a duplicate key."""
        return self._registry.create(defining_key, display_fields)

    def resolve(self, id_or_defining_key: str) -> Resource:
        """Find a resource by id or defining key; raises NotFound."""
        return self._registry.resolve(id_or_defining_key)

    def update(self, id_or_defining_key: str, display_fields: dict[str, str]) -> Resource:
        """Merge display fields into a resource (empty value removes a field)."""
        resource = self.resolve(id_or_defining_key)
        return self._registry.update(resource.id, display_fields)

    def list_all(self) -> Iterator[Resource]:
        return self._registry.list_all()

    # -------------------------------------------------------------------------
    # Attributes
    # -------------------------------------------------------------------------

    def append(
        self,
        id_or_defining_key: str,
        kind: Union[AttributeKind, str],
        payload: Any,
        *,
        fmt: Union[PayloadFormat, str, None] = None,
    ) -> VersionRecord:
        """
        Append an attribute version to an existing resource.

        Args:
            id_or_defining_key: The resource
            kind: tag-set, score-series or property-map (or tags/scores/properties)
            payload: A Python value of the kind's shape, or text when fmt is given
            fmt: "raw" or "json" to parse a textual payload the way the CLI does

        Raises:
            NotFound: If the resource does not exist
            InvalidPayload: If the payload does not match the kind
            Locked: If the history lock could not be acquired in time
        """
        kind = AttributeKind.parse(kind)
        resource = self.resolve(id_or_defining_key)
        if fmt is not None:
            payload = rule_for(kind).parse_text(payload, PayloadFormat.parse(fmt))
        return self._attributes.append(resource.id, kind, payload)

    def read_current(self, id_or_defining_key: str, kind: Union[AttributeKind, str]) -> Any:
        """Materialized current value; NotFound if the resource or history is absent."""
        resource = self.resolve(id_or_defining_key)
        return self._attributes.read_current(resource.id, AttributeKind.parse(kind))

    def list_versions(self, id_or_defining_key: str, kind: Union[AttributeKind, str]) -> list[VersionRecord]:
        """All versions oldest first; empty if the resource has none of this kind."""
        resource = self.resolve(id_or_defining_key)
        return self._attributes.list_versions(resource.id, AttributeKind.parse(kind))

    def list_resources(self, kind: Union[AttributeKind, str]) -> list[ResourceId]:
        """Ids of resources that have history of a kind."""
        return self._attributes.list_resources(AttributeKind.parse(kind))

    # -------------------------------------------------------------------------
    # Index
    # -------------------------------------------------------------------------

    def query(
        self,
        filter_by_tag=None,
        sort_by_score=None,
        project: Iterable[str] = DEFAULT_FIELDS,
        *,
        tag_match=None,
    ) -> list[dict[str, Any]]:
        """See QueryEngine.query()."""
        return self._query.query(
            filter_by_tag=filter_by_tag,
            sort_by_score=sort_by_score,
            project=project,
            tag_match=tag_match,
        )

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def backup(self, dest_dir: Union[str, Path]) -> Path:
        """
        Copy the whole .ark folder to dest_dir/<unix timestamp>/.

        Returns:
            The backup folder

        Raises:
            AlreadyExists: If a backup was already taken in the same second
        """
        target = Path(dest_dir) / str(int(time.time()))
        if target.exists():
            raise AlreadyExists(f"Backup {target} already exists, wait at least one second")
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(
            self._ark_dir,
            target / ARK_FOLDER,
            ignore=shutil.ignore_patterns("*.lock", ".lock", ".tmp-*"),
        )
        logger.info("Backup of %s written to %s", self._root, target)
        return target

    def collisions(self) -> dict[ResourceId, list[str]]:
        """
        Report resources whose defining keys no longer map to their ids.

        Groups every stored resource by the id its defining key derives to
        now. A group is reported if it holds more than one resource, or if
        its single resource is stored under a different id. Both happen only
        if key normalization changed after the resources were created.
        """
        groups: dict[ResourceId, list[Resource]] = {}
        for resource in self._registry.list_all():
            groups.setdefault(derive_id(resource.defining_key), []).append(resource)
        report = {}
        for derived, resources in groups.items():
            if len(resources) > 1 or resources[0].id != derived:
                report[derived] = [r.defining_key for r in resources]
        if report:
            logger.warning("Found %d id collision(s)", len(report))
        return report

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Detach this store's operations log."""
        if self._ops_log_handler is not None:
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self) -> str:
        return f"Store({str(self._root)!r})"


def open_store(root: Optional[Union[str, Path]] = None) -> Store:
    """
    Open the store at root, or the nearest one above the working directory.

    Raises:
        NotFound: If root is None and no ancestor holds an .ark folder
    """
    if root is None:
        root = discover_root()
        if root is None:
            raise NotFound(f"No {ARK_FOLDER} folder in {Path.cwd()} or its parents")
    return Store(root)
