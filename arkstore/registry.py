"""
Resource registry.

The registry is the source of truth for resource identity and metadata.
Each resource is one JSON file named by its id::

    <ark_dir>/resources/<resource_id>.json

Ids are derived from defining keys, so creating the same URL twice collides
on the file name and is rejected without any lookup table.
"""

import json
import logging
from pathlib import Path
from typing import Iterator, Optional

from .errors import AlreadyExists, CorruptRecord, InvalidPayload, NotFound
from .locking import DEFAULT_POLL_INTERVAL, DEFAULT_TIMEOUT, FileLock, publish_new, replace_atomic
from .types import Resource, ResourceId, derive_id, is_resource_id, utc_now

logger = logging.getLogger(__name__)

RESOURCES_DIRNAME = "resources"


def _clean_display_fields(display_fields: Optional[dict]) -> dict[str, str]:
    """Validate display fields; None values are dropped."""
    if display_fields is None:
        return {}
    if not isinstance(display_fields, dict):
        raise InvalidPayload("Display fields must be a mapping of strings")
    cleaned = {}
    for key, value in display_fields.items():
        if not isinstance(key, str) or not key:
            raise InvalidPayload(f"Display field names must be non-empty strings, got {key!r}")
        if value is None:
            continue
        if not isinstance(value, str):
            raise InvalidPayload(f"Display field {key!r} must be a string, got {type(value).__name__}")
        cleaned[key] = value
    return cleaned


class ResourceRegistry:
    """
    File-backed registry of resources.

    Example:
        registry = ResourceRegistry(Path("/data/.ark"))
        r = registry.create("http://google.com", {"title": "Google"})
        assert registry.resolve("HTTP://Google.com").id == r.id
    """

    def __init__(
        self,
        ark_dir: Path,
        *,
        lock_timeout: float = DEFAULT_TIMEOUT,
        lock_poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self._dir = Path(ark_dir) / RESOURCES_DIRNAME
        self._lock_timeout = lock_timeout
        self._lock_poll_interval = lock_poll_interval

    def _path(self, resource_id: str) -> Path:
        return self._dir / f"{resource_id}.json"

    def _lock(self, resource_id: str) -> FileLock:
        return FileLock(
            self._dir / f"{resource_id}.lock",
            timeout=self._lock_timeout,
            poll_interval=self._lock_poll_interval,
        )

    @staticmethod
    def _encode(resource: Resource) -> bytes:
        return (json.dumps(resource.to_dict(), ensure_ascii=False, indent=2) + "\n").encode("utf-8")

    def _load(self, resource_id: str) -> Optional[Resource]:
        path = self._path(resource_id)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        try:
            resource = Resource.from_dict(json.loads(raw.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
            raise CorruptRecord(path, str(e)) from e
        if resource.id != resource_id:
            raise CorruptRecord(path, f"holds resource {resource.id!r}")
        return resource

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def create(self, defining_key: str, display_fields: Optional[dict[str, str]] = None) -> Resource:
        """
        Create a resource from its defining key.

        Args:
            defining_key: URL or filesystem path
            display_fields: Short labels, e.g. {"title": ..., "desc": ...}

        Returns:
            The new Resource

        Raises:
            InvalidPayload: If the key is empty or display fields are not strings
            AlreadyExists: If a resource with the same derived id exists
        """
        if not isinstance(defining_key, str) or not defining_key.strip():
            raise InvalidPayload("Defining key must be a non-empty string")
        fields = _clean_display_fields(display_fields)
        now = utc_now()
        resource = Resource(
            id=derive_id(defining_key),
            defining_key=defining_key.strip(),
            display_fields=fields,
            created_at=now,
            modified_at=now,
        )
        try:
            publish_new(self._path(resource.id), self._encode(resource))
        except AlreadyExists:
            raise AlreadyExists(
                f"Resource already exists: {resource.defining_key} ({resource.id})"
            ) from None
        logger.info("Created resource %s", resource)
        return resource

    def touch(self, resource_id: str) -> Resource:
        """
        Advance a resource's modified_at to now.

        Raises:
            NotFound: If the resource does not exist
            Locked: If another writer holds the resource for too long
        """
        return self._rewrite(resource_id, None)

    def update(self, resource_id: str, display_fields: dict[str, str]) -> Resource:
        """
        Merge display fields into a resource; an empty string removes a field.

        Raises:
            NotFound: If the resource does not exist
            InvalidPayload: If display fields are not strings
        """
        return self._rewrite(resource_id, _clean_display_fields(display_fields))

    def _rewrite(self, resource_id: str, changes: Optional[dict[str, str]]) -> Resource:
        if not self.exists(resource_id):
            raise NotFound(f"Resource not found: {resource_id}")
        with self._lock(resource_id):
            current = self._load(resource_id)
            if current is None:
                raise NotFound(f"Resource not found: {resource_id}")
            fields = dict(current.display_fields)
            for key, value in (changes or {}).items():
                if value:
                    fields[key] = value
                else:
                    fields.pop(key, None)
            updated = Resource(
                id=current.id,
                defining_key=current.defining_key,
                display_fields=fields,
                created_at=current.created_at,
                modified_at=max(utc_now(), current.modified_at),
            )
            replace_atomic(self._path(resource_id), self._encode(updated))
        return updated

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def exists(self, resource_id: str) -> bool:
        return is_resource_id(resource_id) and self._path(resource_id).is_file()

    def get(self, resource_id: str) -> Optional[Resource]:
        """Get a resource by id, or None."""
        if not is_resource_id(resource_id):
            return None
        return self._load(resource_id)

    def resolve(self, id_or_defining_key: str) -> Resource:
        """
        Find a resource by id or by the key it was created from.

        Raises:
            NotFound: If neither interpretation names an existing resource
        """
        if not isinstance(id_or_defining_key, str) or not id_or_defining_key.strip():
            raise NotFound("Empty resource reference")
        ref = id_or_defining_key.strip()
        if is_resource_id(ref):
            resource = self._load(ref)
            if resource is not None:
                return resource
        resource = self._load(derive_id(ref))
        if resource is None:
            raise NotFound(f"Resource not found: {ref}")
        return resource

    def ids(self) -> list[ResourceId]:
        """All resource ids, in no particular order."""
        if not self._dir.is_dir():
            return []
        return [
            ResourceId(p.stem) for p in self._dir.glob("*.json")
            if is_resource_id(p.stem)
        ]

    def list_all(self) -> Iterator[Resource]:
        """
        Iterate all resources in creation order.

        Resources created within the same microsecond are ordered by id.
        """
        entries = []
        for resource_id in self.ids():
            resource = self._load(resource_id)
            if resource is not None:
                entries.append(resource)
        entries.sort(key=lambda r: (r.created_at, r.id))
        yield from entries

    def count(self) -> int:
        return len(self.ids())
