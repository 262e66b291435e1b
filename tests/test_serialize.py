"""Persisting closures as {"source", "scope"} records."""

import json
import math

import pytest

import scopelift
from scopelift.errors import IncompatibleScopeShape, SerializationError
from scopelift.reflect import scope, state
from scopelift.serialize import deserialize, dumps, loads, serialize

NESTED = """\
def f(x, y):
    def middle(z):
        return lambda: x + y + z
    return middle
"""


def _run(source):
    return scopelift.execute(source, {"__name__": "serialized"})


def test_record_shape(fixed_ids):
    g = _run(NESTED)["f"](10, 15)(20)
    assert serialize(g) == {
        "source": "lambda: x + y + z",
        "scope": {
            "id": "s2",
            "bindings": {"z": 20},
            "parent": {"id": "s1", "bindings": {"x": 10, "y": 15}, "parent": None},
        },
    }


def test_json_round_trip():
    g = _run(NESTED)["f"](10, 15)(20)
    text = dumps(g)
    assert json.loads(text)["source"] == "lambda: x + y + z"
    restored = loads(text)
    assert restored() == 45
    assert state(restored) == {"x": 10, "y": 15, "z": 20}


def test_restored_closure_is_detached():
    inc = _run(
        "def counter():\n"
        "    n = 0\n"
        "    def inc():\n"
        "        nonlocal n\n"
        "        n += 1\n"
        "        return n\n"
        "    return inc\n"
    )["counter"]()
    inc()
    copy = loads(dumps(inc))
    assert copy() == 2
    assert copy() == 3
    assert inc() == 2


def test_registry_relinks_shared_parents():
    middle = _run(NESTED)["f"](1, 2)
    records = [serialize(middle(3)), serialize(middle(4))]
    registry = {}
    a, b = (deserialize(r, registry=registry) for r in records)
    assert scope(a).parent is scope(b).parent
    scope(a).parent.bindings["x"] = 100
    assert b() == 106


def test_without_registry_parents_are_separate():
    middle = _run(NESTED)["f"](1, 2)
    a = deserialize(serialize(middle(3)))
    b = deserialize(serialize(middle(4)))
    assert scope(a).parent is not scope(b).parent
    assert scope(a).parent.id == scope(b).parent.id


def test_unbound_names():
    g = _run(
        "def f():\n"
        "    def g():\n"
        "        return later\n"
        "    return g\n"
        "    later = 1\n"
    )["f"]()
    record = serialize(g)
    assert record["scope"]["bindings"] == {}
    assert record["scope"]["unbound"] == ["later"]
    restored = deserialize(record)
    with pytest.raises(NameError):
        restored()


def test_module_names_come_from_namespace():
    g = _run("import math\ndef f(x):\n    return lambda: math.sqrt(x)\n")["f"](16)
    record = serialize(g)
    with pytest.raises(IncompatibleScopeShape):
        deserialize(record)
    assert deserialize(record, {"math": math})() == 4.0


def test_unrecorded_source():
    g = _run("# scopelift: no-source\n" + NESTED)["f"](1, 2)(3)
    with pytest.raises(SerializationError):
        serialize(g)


def test_unrepresentable_binding():
    g = _run("def f(x):\n    return lambda: x\n")["f"](object())
    assert serialize(g)["scope"]["bindings"]["x"] is not None
    with pytest.raises(SerializationError):
        dumps(g)


@pytest.mark.parametrize(
    "record",
    [
        {},
        {"source": "lambda: a"},
        {"source": 1, "scope": {"id": "a", "bindings": {}, "parent": None}},
        {"source": "lambda: a", "scope": "gensym_1"},
        {"source": "lambda: a", "scope": {"bindings": {"a": 1}, "parent": None}},
        {"source": "lambda: a", "scope": {"id": 3, "bindings": {"a": 1}, "parent": None}},
        {"source": "lambda: a", "scope": {"id": "a", "bindings": [], "parent": None}},
    ],
    ids=[
        "empty",
        "no scope",
        "source not text",
        "scope not a record",
        "missing id",
        "id not text",
        "bindings not a mapping",
    ],
)
def test_malformed_records(record):
    with pytest.raises(SerializationError):
        deserialize(record)


def test_invalid_json():
    with pytest.raises(SerializationError):
        loads("{not json")
