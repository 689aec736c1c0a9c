"""
Attribute kinds and their merge rules.

Each attribute kind fixes the shape of a version payload and how a history
of versions collapses into the current value. The rules implement the
MergeRule protocol and are looked up through ``rule_for(kind)``, so a new
kind is one enum member plus one rule class.
"""

import json
import math
from collections.abc import Iterable
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from .errors import InvalidPayload


class AttributeKind(str, Enum):
    """The attribute kinds a resource can carry."""
    TAG_SET = "tag-set"
    SCORE_SERIES = "score-series"
    PROPERTY_MAP = "property-map"

    @property
    def folder(self) -> str:
        """Storage folder name under ``.ark/user/``."""
        return _FOLDERS[self]

    @classmethod
    def parse(cls, value: "str | AttributeKind") -> "AttributeKind":
        """Accept a kind name (``tag-set``) or its folder alias (``tags``)."""
        if isinstance(value, AttributeKind):
            return value
        name = value.strip().lower()
        for kind in cls:
            if name in (kind.value, kind.folder):
                return kind
        names = ", ".join(f"{k.value}|{k.folder}" for k in cls)
        raise InvalidPayload(f"Unknown attribute kind {value!r} (expected one of: {names})")

    def __str__(self) -> str:
        return self.value


_FOLDERS = {
    AttributeKind.TAG_SET: "tags",
    AttributeKind.SCORE_SERIES: "scores",
    AttributeKind.PROPERTY_MAP: "properties",
}


class PayloadFormat(str, Enum):
    """How textual payloads are written on the command line."""
    RAW = "raw"
    JSON = "json"

    @classmethod
    def parse(cls, value: "str | PayloadFormat | None") -> "PayloadFormat":
        if value is None:
            return cls.RAW
        if isinstance(value, PayloadFormat):
            return value
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise InvalidPayload(f"Unknown payload format {value!r} (expected raw or json)") from None


@runtime_checkable
class MergeRule(Protocol):
    """
    Payload shape and materialization for one attribute kind.

    ``validate`` is the gate for every payload written to disk and for every
    payload read back, so stored history always has the canonical shape.
    """

    kind: AttributeKind

    def validate(self, payload: Any) -> Any:
        """
        Check a payload and return its canonical form.

        Raises:
            InvalidPayload: If the payload does not have the kind's shape
        """
        ...

    def parse_text(self, content: str, fmt: PayloadFormat) -> Any:
        """Parse a command-line payload in the given format."""
        ...

    def to_json(self, payload: Any) -> Any:
        """Convert a canonical payload into a JSON-ready value."""
        ...

    def merge(self, payloads: Iterable[Any]) -> Any:
        """Fold payloads, oldest first, into the current value."""
        ...


def _load_json(content: str) -> Any:
    try:
        return json.loads(content)
    except json.JSONDecodeError as e:
        raise InvalidPayload(f"Malformed JSON: {e}") from None


class TagSetRule:
    """Each version adds a set of tags; the current value is their union."""

    kind = AttributeKind.TAG_SET

    def validate(self, payload: Any) -> frozenset[str]:
        if isinstance(payload, str):
            payload = self._split(payload)
        if isinstance(payload, (dict, bytes)) or not isinstance(payload, Iterable):
            raise InvalidPayload(f"Tags must be a collection of strings, got {type(payload).__name__}")
        tags = set()
        for tag in payload:
            if not isinstance(tag, str):
                raise InvalidPayload(f"Tag must be a string, got {tag!r}")
            tag = tag.strip()
            if not tag:
                raise InvalidPayload("Tags must not be empty")
            if "," in tag or "\n" in tag:
                raise InvalidPayload(f"Tag contains a separator character: {tag!r}")
            tags.add(tag)
        if not tags:
            raise InvalidPayload("At least one tag is required")
        return frozenset(tags)

    @staticmethod
    def _split(content: str) -> list[str]:
        return [t.strip() for t in content.split(",") if t.strip()]

    def parse_text(self, content: str, fmt: PayloadFormat) -> frozenset[str]:
        if fmt is PayloadFormat.JSON:
            data = _load_json(content)
            if not isinstance(data, list):
                raise InvalidPayload("JSON tags must be an array of strings")
            return self.validate(data)
        return self.validate(self._split(content))

    def to_json(self, payload: frozenset[str]) -> list[str]:
        return sorted(payload)

    def merge(self, payloads: Iterable[frozenset[str]]) -> frozenset[str]:
        current: set[str] = set()
        for tags in payloads:
            current |= tags
        return frozenset(current)


class ScoreSeriesRule:
    """Each version is one number; the current value is the latest one."""

    kind = AttributeKind.SCORE_SERIES

    def validate(self, payload: Any) -> int | float:
        if isinstance(payload, str):
            payload = self._parse_number(payload)
        # bool is an int subclass but never a score
        if isinstance(payload, bool) or not isinstance(payload, (int, float)):
            raise InvalidPayload(f"Score must be a number, got {payload!r}")
        try:
            finite = math.isfinite(payload)
        except OverflowError:
            raise InvalidPayload("Score out of range") from None
        if not finite:
            raise InvalidPayload(f"Score must be finite, got {payload!r}")
        return payload

    @staticmethod
    def _parse_number(content: str) -> int | float:
        text = content.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            raise InvalidPayload(f"Score must be a number, got {content!r}") from None

    def parse_text(self, content: str, fmt: PayloadFormat) -> int | float:
        if fmt is PayloadFormat.JSON:
            return self.validate(_load_json(content))
        return self.validate(self._parse_number(content))

    def to_json(self, payload: int | float) -> int | float:
        return payload

    def merge(self, payloads: Iterable[int | float]) -> int | float | None:
        current = None
        for score in payloads:
            current = score
        return current


class PropertyMapRule:
    """Each version is a partial object; later top-level keys win."""

    kind = AttributeKind.PROPERTY_MAP

    def validate(self, payload: Any) -> dict[str, Any]:
        if isinstance(payload, str):
            payload = _load_json(payload)
        if not isinstance(payload, dict):
            raise InvalidPayload(f"Properties must be a JSON object, got {type(payload).__name__}")
        if not payload:
            raise InvalidPayload("At least one property is required")
        for key in payload:
            if not isinstance(key, str) or not key:
                raise InvalidPayload(f"Property keys must be non-empty strings, got {key!r}")
        try:
            # Round-trip so stored payloads never share structure with the caller
            return json.loads(json.dumps(payload, allow_nan=False))
        except (TypeError, ValueError) as e:
            raise InvalidPayload(f"Properties are not JSON-serializable: {e}") from None

    @staticmethod
    def _key_values(content: str) -> dict[str, str]:
        """Parse ``key=value,key=value`` into a dict of strings."""
        pairs: dict[str, str] = {}
        for item in content.split(","):
            if not item.strip():
                continue
            if "=" not in item:
                raise InvalidPayload(f"Invalid property {item.strip()!r}, use key=value")
            key, value = item.split("=", 1)
            key = key.strip()
            if not key:
                raise InvalidPayload(f"Invalid property {item.strip()!r}, key is empty")
            pairs[key] = value.strip()
        return pairs

    def parse_text(self, content: str, fmt: PayloadFormat) -> dict[str, Any]:
        if fmt is PayloadFormat.JSON:
            return self.validate(_load_json(content))
        return self.validate(self._key_values(content))

    def to_json(self, payload: dict[str, Any]) -> dict[str, Any]:
        return payload

    def merge(self, payloads: Iterable[dict[str, Any]]) -> dict[str, Any]:
        current: dict[str, Any] = {}
        for patch in payloads:
            current.update(patch)
        return current


_RULES: dict[AttributeKind, MergeRule] = {
    rule.kind: rule for rule in (TagSetRule(), ScoreSeriesRule(), PropertyMapRule())
}


def rule_for(kind: AttributeKind) -> MergeRule:
    """Return the merge rule for an attribute kind."""
    return _RULES[AttributeKind.parse(kind)]
