"""
ark: a local store of links and files with versioned tags, scores and properties.
"""

from .api import Store, discover_root, open_store
from .errors import AlreadyExists, ArkError, CorruptRecord, InvalidPayload, Locked, NotFound
from .kinds import AttributeKind, PayloadFormat
from .query import SortOrder, TagMatch
from .types import Resource, ResourceId, VersionRecord, derive_id

__version__ = "0.3.0"

__all__ = [
    "Store",
    "discover_root",
    "open_store",
    "ArkError",
    "NotFound",
    "AlreadyExists",
    "InvalidPayload",
    "Locked",
    "CorruptRecord",
    "AttributeKind",
    "PayloadFormat",
    "SortOrder",
    "TagMatch",
    "Resource",
    "ResourceId",
    "VersionRecord",
    "derive_id",
]
