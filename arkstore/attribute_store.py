"""
Append-only, versioned attribute history.

Every (resource, kind) pair owns one history directory::

    <user_dir>/<kind folder>/<resource_id>/1
    <user_dir>/<kind folder>/<resource_id>/2
    ...

Each numbered file holds one immutable version record as JSON. Version
numbers start at 1 and are contiguous: appends hold the history's lock
while they pick the next number and publish the file, and files are
published atomically so readers never need the lock.
"""

import json
import logging
from pathlib import Path
from typing import Any, Callable, Optional

from .errors import ArkError, CorruptRecord, InvalidPayload, NotFound
from .kinds import AttributeKind, rule_for
from .locking import DEFAULT_POLL_INTERVAL, DEFAULT_TIMEOUT, FileLock, publish_new
from .types import ResourceId, VersionRecord, is_resource_id, utc_now

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".lock"


class AttributeStore:
    """
    Versioned key-value log keyed by (resource id, attribute kind).

    The store does not know about resources beyond their ids. Callers that
    need modification times kept current pass ``on_append``, which is called
    with the resource id after each successful append.
    """

    def __init__(
        self,
        user_dir: Path,
        *,
        lock_timeout: float = DEFAULT_TIMEOUT,
        lock_poll_interval: float = DEFAULT_POLL_INTERVAL,
        on_append: Optional[Callable[[ResourceId], Any]] = None,
    ):
        """
        Args:
            user_dir: The ``.ark/user`` directory holding one folder per kind
            lock_timeout: Seconds to wait for a history lock before Locked
            lock_poll_interval: Seconds between lock attempts
            on_append: Notification hook, called after each append
        """
        self._user_dir = Path(user_dir)
        self._lock_timeout = lock_timeout
        self._lock_poll_interval = lock_poll_interval
        self._on_append = on_append

    @property
    def user_dir(self) -> Path:
        return self._user_dir

    def _history_dir(self, resource_id: str, kind: AttributeKind) -> Path:
        if not is_resource_id(resource_id):
            raise NotFound(f"Not a resource id: {resource_id!r}")
        return self._user_dir / kind.folder / resource_id

    def _lock(self, history_dir: Path) -> FileLock:
        return FileLock(
            history_dir / LOCK_FILENAME,
            timeout=self._lock_timeout,
            poll_interval=self._lock_poll_interval,
        )

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def append(self, resource_id: str, kind: AttributeKind, payload: Any) -> VersionRecord:
        """
        Append a new version to a resource's history of one kind.

        The payload is validated before anything is touched on disk; a failed
        append leaves the history exactly as it was.

        Args:
            resource_id: Id of the resource
            kind: Attribute kind (or its name)
            payload: Tags, a score, or a property object, per the kind

        Returns:
            The stored VersionRecord

        Raises:
            InvalidPayload: If the payload does not match the kind
            NotFound: If resource_id is not a resource id
            Locked: If the history lock could not be acquired in time
            CorruptRecord: If the existing history has gaps
        """
        kind = AttributeKind.parse(kind)
        rule = rule_for(kind)
        payload = rule.validate(payload)
        history_dir = self._history_dir(resource_id, kind)
        history_dir.mkdir(parents=True, exist_ok=True)

        with self._lock(history_dir):
            numbers = self._version_numbers(history_dir)
            version = len(numbers) + 1
            record = VersionRecord(
                resource_id=ResourceId(resource_id),
                kind=kind,
                version_number=version,
                timestamp=utc_now(),
                payload=payload,
            )
            publish_new(history_dir / str(version), self._encode(record))

        logger.info("Appended %s v%d for %s", kind.value, version, resource_id)

        if self._on_append is not None:
            try:
                self._on_append(record.resource_id)
            except ArkError as e:
                # The version is already durable
                logger.warning("Could not touch %s after append: %s", resource_id, e)
        return record

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def list_versions(self, resource_id: str, kind: AttributeKind) -> list[VersionRecord]:
        """
        All version records of a resource's history, oldest first.

        Returns an empty list if the history does not exist.

        Raises:
            CorruptRecord: If any record cannot be parsed
        """
        kind = AttributeKind.parse(kind)
        history_dir = self._history_dir(resource_id, kind)
        if not history_dir.is_dir():
            return []
        return [
            self._read_record(history_dir / str(n), resource_id, kind, n)
            for n in self._version_numbers(history_dir)
        ]

    def read_current(self, resource_id: str, kind: AttributeKind) -> Any:
        """
        Materialize the current value of a resource's attribute.

        Tags are returned as a frozenset, scores as a number, and properties
        as a dict.

        Raises:
            NotFound: If the resource has no versions of this kind
            CorruptRecord: If any record cannot be parsed
        """
        kind = AttributeKind.parse(kind)
        records = self.list_versions(resource_id, kind)
        if not records:
            raise NotFound(f"No {kind.value} history for {resource_id}")
        return rule_for(kind).merge(r.payload for r in records)

    def version_count(self, resource_id: str, kind: AttributeKind) -> int:
        """Number of versions in a history (0 if none)."""
        kind = AttributeKind.parse(kind)
        history_dir = self._history_dir(resource_id, kind)
        if not history_dir.is_dir():
            return 0
        return len(self._version_numbers(history_dir))

    def list_resources(self, kind: AttributeKind) -> list[ResourceId]:
        """Ids of all resources with at least one version of a kind, sorted."""
        kind = AttributeKind.parse(kind)
        kind_dir = self._user_dir / kind.folder
        if not kind_dir.is_dir():
            return []
        ids = []
        for entry in kind_dir.iterdir():
            if entry.is_dir() and is_resource_id(entry.name) and self._version_numbers(entry):
                ids.append(ResourceId(entry.name))
        return sorted(ids)

    # -------------------------------------------------------------------------
    # Record files
    # -------------------------------------------------------------------------

    @staticmethod
    def _version_numbers(history_dir: Path) -> list[int]:
        """Sorted version numbers present in a history directory.

        Lock and temp files are ignored. Numbers must run 1..N.
        """
        numbers = sorted(
            int(entry.name) for entry in history_dir.iterdir()
            if entry.name.isdigit() and not entry.name.startswith("0")
        )
        for expected, n in enumerate(numbers, start=1):
            if n != expected:
                raise CorruptRecord(history_dir / str(expected), "missing version in history")
        return numbers

    @staticmethod
    def _encode(record: VersionRecord) -> bytes:
        data = {
            "resource_id": str(record.resource_id),
            "kind": record.kind.value,
            "version": record.version_number,
            "timestamp": record.timestamp,
            "payload": rule_for(record.kind).to_json(record.payload),
        }
        return (json.dumps(data, ensure_ascii=False, sort_keys=True) + "\n").encode("utf-8")

    @staticmethod
    def _read_record(path: Path, resource_id: str, kind: AttributeKind, version: int) -> VersionRecord:
        try:
            data = json.loads(path.read_bytes().decode("utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CorruptRecord(path, str(e)) from e

        if not isinstance(data, dict):
            raise CorruptRecord(path, "record is not a JSON object")
        missing = {"resource_id", "kind", "version", "timestamp", "payload"} - data.keys()
        if missing:
            raise CorruptRecord(path, f"missing fields: {', '.join(sorted(missing))}")
        if data["resource_id"] != resource_id:
            raise CorruptRecord(path, f"belongs to {data['resource_id']!r}")
        if data["kind"] != kind.value:
            raise CorruptRecord(path, f"has kind {data['kind']!r}")
        if data["version"] != version:
            raise CorruptRecord(path, f"has version {data['version']!r}")
        if not isinstance(data["timestamp"], str):
            raise CorruptRecord(path, "timestamp is not a string")
        if isinstance(data["payload"], str):
            raise CorruptRecord(path, "payload is a bare string")

        try:
            payload = rule_for(kind).validate(data["payload"])
        except InvalidPayload as e:
            raise CorruptRecord(path, str(e)) from e

        return VersionRecord(
            resource_id=ResourceId(resource_id),
            kind=kind,
            version_number=version,
            timestamp=data["timestamp"],
            payload=payload,
        )
