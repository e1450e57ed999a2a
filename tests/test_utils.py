import string

import pytest

from formflow.utils import answers_key, generate_slug, parse_json_object, parse_number, to_text

pytestmark = pytest.mark.unit


def test_slug_strips_accents_and_punctuation():
    slug = generate_slug("Olá, Mundo!  2024")
    base, suffix = slug.rsplit("-", 1)
    assert base == "ola-mundo-2024"
    assert len(suffix) == 6
    assert set(suffix) <= set(string.ascii_lowercase + string.digits)


def test_slugs_differ_for_same_title():
    assert generate_slug("Survey") != generate_slug("Survey")


def test_answers_key_ignores_key_order():
    assert answers_key({"a": 1, "b": [1, 2]}) == answers_key({"b": [1, 2], "a": 1})
    assert answers_key({"a": 1}) != answers_key({"a": "1"})


@pytest.mark.parametrize("text,expected", [
    ("42", 42.0),
    (" -3.5 ", -3.5),
    ("1e3", 1000.0),
    (".5", 0.5),
    ("", None),
    ("   ", None),
    ("abc", None),
    ("1_000", None),
    ("inf", None),
    ("nan", None),
])
def test_parse_number(text, expected):
    assert parse_number(text) == expected


@pytest.mark.parametrize("value,expected", [
    (None, ""),
    (True, "true"),
    (3.0, "3"),
    (2.5, "2.5"),
    (["a", "b"], "a,b"),
    ({"k": 1}, '{"k":1}'),
])
def test_to_text(value, expected):
    assert to_text(value) == expected


def test_parse_json_object_tolerates_garbage():
    assert parse_json_object('{"a": "b"}') == {"a": "b"}
    assert parse_json_object("{oops") == {}
    assert parse_json_object("[1]") == {}
