from __future__ import annotations

import json
import re

import pytest

from webpuppet.errors import InvalidQueryError
from webpuppet.predicates import Equals, Matches, contact_predicate, room_predicate, to_script


def test_string_query_becomes_equals():
    assert contact_predicate({"name": "alice"}) == Equals(field="NickName", value="alice")
    assert contact_predicate({"alias": "bob"}) == Equals(field="RemarkName", value="bob")


def test_regex_query_becomes_matches():
    predicate = contact_predicate({"alias": re.compile("^bo", re.IGNORECASE)})
    assert isinstance(predicate, Matches)
    assert predicate.field == "RemarkName"
    assert predicate.pattern == "^bo"
    assert predicate.to_wire() == {"kind": "matches", "field": "RemarkName", "pattern": "^bo", "flags": "i"}


@pytest.mark.parametrize(
    "query",
    [
        {},
        {"name": "a", "alias": "b"},
        {"weixin": "x"},
        {"name": ""},
        {"name": 42},
    ],
)
def test_invalid_contact_queries(query):
    with pytest.raises(InvalidQueryError):
        contact_predicate(query)


def test_room_predicate_defaults_to_match_all():
    predicate = room_predicate()
    assert predicate == Matches(field="NickName", pattern=".*")
    assert predicate.test({"NickName": "anything"})
    assert room_predicate("Book club") == Equals(field="NickName", value="Book club")


def test_predicates_evaluate_locally():
    assert Equals("NickName", "alice").test({"NickName": "alice"})
    assert not Equals("NickName", "alice").test({"NickName": "alice2"})
    assert Matches("NickName", "^al").test({"NickName": "alice"})
    assert not Matches("NickName", "^al").test({})


def test_script_embeds_only_json_literals():
    hostile = "x' ]; fetch('//evil'); var y = ['"
    script = to_script(Equals("NickName", hostile))
    assert json.dumps(hostile) in script
    assert script.startswith("(function (c) {")


def test_regex_script_escapes_pattern_text():
    pattern = '"); alert(1); ("'
    script = to_script(Matches("NickName", pattern, re.IGNORECASE))
    assert json.dumps(pattern) in script
    assert 'new RegExp("\\"); alert(1); (\\"", "i")' in script
