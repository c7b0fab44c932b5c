import pytest

from curator.domain.ports import FixedTimePort, SeededRandomPort, SystemRandomPort, SystemTimePort


def test_seeded_random_is_reproducible():
    a, b = SeededRandomPort(7), SeededRandomPort(7)
    assert [a.random() for _ in range(5)] == [b.random() for _ in range(5)]
    assert SeededRandomPort(7).random() != SeededRandomPort(8).random()


def test_seeded_random_values_in_unit_interval():
    port = SeededRandomPort(123)
    assert all(0 <= port.random() < 1 for _ in range(100))


def test_seeded_shuffle_is_a_permutation():
    items = list(range(10))
    shuffled = SeededRandomPort(1).shuffle(items)
    assert sorted(shuffled) == items
    assert shuffled == SeededRandomPort(1).shuffle(items)
    assert items == list(range(10))


def test_pick_from_empty_raises():
    with pytest.raises(ValueError):
        SeededRandomPort(1).pick([])
    with pytest.raises(ValueError):
        SystemRandomPort().pick([])


def test_pick_returns_member():
    assert SeededRandomPort(3).pick(["a", "b", "c"]) in {"a", "b", "c"}


def test_time_ports():
    assert FixedTimePort(1000).now_ms() == 1000
    assert SystemTimePort().now_ms() > 1_600_000_000_000
