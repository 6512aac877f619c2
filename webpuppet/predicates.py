"""Structured search filters for contact and room lookups.

Callers pass a one-key filter such as ``{"name": "alice"}`` or
``{"alias": re.compile("^bo")}``. The bridge receives an ``Equals`` or
``Matches`` value. Transports that evaluate filters inside the page get
script text from ``to_script()``, which only ever embeds JSON literals.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Mapping, Pattern, Union

from .errors import InvalidQueryError

CONTACT_FIELDS = {
    "name": "NickName",
    "alias": "RemarkName",
}
ROOM_FIELDS = {
    "topic": "NickName",
}

_JS_FLAGS = (
    (re.IGNORECASE, "i"),
    (re.MULTILINE, "m"),
    (re.DOTALL, "s"),
)


@dataclass(frozen=True)
class Equals:
    field: str
    value: str

    def test(self, record: Mapping[str, Any]) -> bool:
        return record.get(self.field) == self.value

    def to_wire(self) -> dict:
        return {"kind": "equals", "field": self.field, "value": self.value}


@dataclass(frozen=True)
class Matches:
    field: str
    pattern: str
    flags: int = 0

    def test(self, record: Mapping[str, Any]) -> bool:
        value = record.get(self.field)
        return isinstance(value, str) and re.search(self.pattern, value, self.flags) is not None

    def to_wire(self) -> dict:
        return {"kind": "matches", "field": self.field, "pattern": self.pattern, "flags": js_flags(self.flags)}


QueryPredicate = Union[Equals, Matches]


def js_flags(flags: int) -> str:
    return "".join(letter for flag, letter in _JS_FLAGS if flags & flag)


def _build(field: str, value: Union[str, Pattern[str], None]) -> QueryPredicate:
    if isinstance(value, re.Pattern):
        return Matches(field=field, pattern=value.pattern, flags=value.flags & ~re.UNICODE)
    if isinstance(value, str) and value:
        return Equals(field=field, value=value)
    if not value:
        raise InvalidQueryError("filter value not found", {"field": field})
    raise InvalidQueryError(f"unsupported filter value type {type(value).__name__}", {"field": field})


def contact_predicate(query: Mapping[str, Union[str, Pattern[str]]]) -> QueryPredicate:
    if len(query) != 1:
        raise InvalidQueryError("query only supports one key", {"keys": sorted(query)})
    key, value = next(iter(query.items()))
    field = CONTACT_FIELDS.get(key)
    if field is None:
        raise InvalidQueryError(f"unsupported filter key {key!r}", {"key": key})
    return _build(field, value)


def room_predicate(topic: Union[str, Pattern[str], None] = None) -> QueryPredicate:
    if topic is None:
        topic = re.compile(".*")
    return _build(ROOM_FIELDS["topic"], topic)


def to_script(predicate: QueryPredicate) -> str:
    """Function source for transports that evaluate filters in the page."""
    field = json.dumps(predicate.field)
    if isinstance(predicate, Equals):
        return f"(function (c) {{ return c[{field}] === {json.dumps(predicate.value)} }})"
    pattern = json.dumps(predicate.pattern)
    flags = json.dumps(js_flags(predicate.flags))
    return f"(function (c) {{ return new RegExp({pattern}, {flags}).test(c[{field}]) }})"


__all__ = [
    "Equals",
    "Matches",
    "QueryPredicate",
    "contact_predicate",
    "room_predicate",
    "to_script",
    "js_flags",
]
