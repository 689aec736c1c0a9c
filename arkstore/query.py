"""
Index queries over all resources.

The index is computed on every query from the registry and the attribute
histories; nothing here is persisted. Attributes are only read when a
filter, sort or projected field needs them.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from .attribute_store import AttributeStore
from .errors import InvalidPayload, NotFound
from .kinds import AttributeKind
from .registry import ResourceRegistry
from .types import Resource

logger = logging.getLogger(__name__)


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class TagMatch(str, Enum):
    """How a tag filter string is compared against a resource's tags.

    EXACT: the resource must carry the tag itself (case-sensitive).
    SUBSTRING: some tag of the resource must contain the filter text.
    """
    EXACT = "exact"
    SUBSTRING = "substring"


# Projectable fields of a resource view
FIELDS = ("id", "path", "timestamp", "created", "fields", "tags", "scores", "history")
DEFAULT_FIELDS = ("id", "path")

TagPredicate = Callable[[frozenset[str]], bool]


@dataclass(frozen=True)
class ResourceView:
    """A resource decorated with its materialized attributes.

    ``tags`` is empty and ``score`` is None when a resource has no history
    of that kind, or when the query did not need to read it.
    """
    resource: Resource
    tags: frozenset[str] = frozenset()
    score: Optional[float] = None
    history: list = field(default_factory=list)

    def project(self, fields: Iterable[str]) -> dict[str, Any]:
        values = {
            "id": lambda: str(self.resource.id),
            "path": lambda: self.resource.defining_key,
            "timestamp": lambda: self.resource.modified_at,
            "created": lambda: self.resource.created_at,
            "fields": lambda: dict(self.resource.display_fields),
            "tags": lambda: sorted(self.tags),
            "scores": lambda: self.score,
            "history": lambda: list(self.history),
        }
        return {name: values[name]() for name in fields}


def tag_predicate(tag_filter: str, match: TagMatch = TagMatch.EXACT) -> Optional[TagPredicate]:
    """
    Build a predicate from a tag filter string.

    A comma-separated filter requires every listed tag (AND). Returns None
    for a filter with no tags in it.
    """
    wanted = [t.strip() for t in tag_filter.split(",") if t.strip()]
    if not wanted:
        return None
    if match is TagMatch.SUBSTRING:
        return lambda tags: all(any(w in t for t in tags) for w in wanted)
    return lambda tags: all(w in tags for w in wanted)


def _sort_key(order: SortOrder):
    # Unscored resources go last for asc, first for desc; ties by defining key
    if order is SortOrder.ASC:
        return lambda v: (v.score is None, v.score if v.score is not None else 0, v.resource.defining_key)
    return lambda v: (v.score is not None, -v.score if v.score is not None else 0, v.resource.defining_key)


class QueryEngine:
    """
    Lists resources with optional tag filter, score sort and projection.

    Example:
        engine = QueryEngine(registry, attributes)
        engine.query(filter_by_tag="engine", sort_by_score="desc",
                     project=("id", "path", "tags", "scores"))
    """

    def __init__(
        self,
        registry: ResourceRegistry,
        attributes: AttributeStore,
        *,
        tag_match: Union[TagMatch, str] = TagMatch.EXACT,
    ):
        self._registry = registry
        self._attributes = attributes
        self._tag_match = TagMatch(tag_match)

    def _tags(self, resource: Resource) -> frozenset[str]:
        try:
            return self._attributes.read_current(resource.id, AttributeKind.TAG_SET)
        except NotFound:
            return frozenset()

    def _score(self, resource: Resource) -> Optional[float]:
        try:
            return self._attributes.read_current(resource.id, AttributeKind.SCORE_SERIES)
        except NotFound:
            return None

    def query(
        self,
        filter_by_tag: Union[str, TagPredicate, None] = None,
        sort_by_score: Union[SortOrder, str, None] = None,
        project: Iterable[str] = DEFAULT_FIELDS,
        *,
        tag_match: Union[TagMatch, str, None] = None,
    ) -> list[dict[str, Any]]:
        """
        List resources decorated with their attributes.

        Args:
            filter_by_tag: Tag filter string (comma-separated tags are ANDed),
                or a predicate over a resource's tag set
            sort_by_score: "asc" or "desc"; None keeps creation order
            project: Field names to include, from FIELDS
            tag_match: Overrides the engine's matching policy for a string filter

        Returns:
            One dict per resource with exactly the projected fields

        Raises:
            InvalidPayload: For unknown fields, sort orders or match policies
            CorruptRecord: If a resource or attribute record cannot be parsed
        """
        fields = list(dict.fromkeys(project))
        unknown = [f for f in fields if f not in FIELDS]
        if unknown:
            raise InvalidPayload(f"Unknown field(s): {', '.join(unknown)} (expected: {', '.join(FIELDS)})")
        try:
            order = SortOrder(sort_by_score) if sort_by_score is not None else None
            match = TagMatch(tag_match) if tag_match is not None else self._tag_match
        except ValueError as e:
            raise InvalidPayload(str(e)) from None

        if isinstance(filter_by_tag, str):
            predicate = tag_predicate(filter_by_tag, match)
        else:
            predicate = filter_by_tag

        need_tags = predicate is not None or "tags" in fields
        need_score = order is not None or "scores" in fields
        need_history = "history" in fields

        views = []
        for resource in self._registry.list_all():
            tags = self._tags(resource) if need_tags else frozenset()
            if predicate is not None and not predicate(tags):
                continue
            history = []
            if need_history:
                history = [r.payload for r in
                           self._attributes.list_versions(resource.id, AttributeKind.SCORE_SERIES)]
            if need_history and need_score:
                score = history[-1] if history else None
            else:
                score = self._score(resource) if need_score else None
            views.append(ResourceView(resource=resource, tags=tags, score=score, history=history))

        if order is not None:
            views.sort(key=_sort_key(order))

        logger.debug("Query matched %d resources (filter=%r, sort=%s)", len(views), filter_by_tag, order)
        return [v.project(fields) for v in views]
