"""Scope identity generation."""

import threading

from scopelift import ids
from scopelift.scope import Scope


def test_counter_ids_are_sequential():
    gen = ids.CounterIds()
    assert [gen.next(), gen.next(), gen.next()] == ["gensym_1", "gensym_2", "gensym_3"]


def test_prefix_and_start():
    gen = ids.CounterIds(prefix="t", start=10)
    assert gen.next() == "t10"
    assert gen.next() == "t11"


def test_using_restores_the_previous_generator():
    before = ids.get_generator()
    with ids.using(ids.CounterIds(prefix="x")) as gen:
        assert ids.get_generator() is gen
        assert Scope().id == "x1"
    assert ids.get_generator() is before


def test_set_generator_returns_previous():
    mine = ids.CounterIds(prefix="m")
    previous = ids.set_generator(mine)
    try:
        assert ids.next_id() == "m1"
    finally:
        assert ids.set_generator(previous) is mine


def test_custom_generator(fixed_ids):
    class Fixed(ids.IdGenerator):
        def __init__(self):
            self.issued = iter(["alpha", "beta"])

        def next(self):
            return next(self.issued)

    with ids.using(Fixed()):
        assert [Scope().id, Scope().id] == ["alpha", "beta"]
    assert Scope().id == "s1"


def test_ids_are_unique_across_threads():
    gen = ids.CounterIds()
    seen = []
    lock = threading.Lock()

    def work():
        mine = [gen.next() for _ in range(500)]
        with lock:
            seen.extend(mine)

    threads = [threading.Thread(target=work) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(seen) == len(set(seen)) == 4000


def test_ids_are_never_reused():
    first = Scope().id
    del_me = Scope()
    second = del_me.id
    del del_me
    assert len({first, second, Scope().id}) == 3
