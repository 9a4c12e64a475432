import pytest

from bearer_models import BackhaulInvariantError, RingPath, RoutingPath
from path_manager import (PathManager, hop_count, invert, next_hop,
                          shortest_direction, walk)


@pytest.mark.parametrize("n", range(3, 10))
def test_shortest_is_at_most_half_ring(n):
    for src in range(n):
        for dst in range(n):
            d = shortest_direction(src, dst, n)
            hops = hop_count(src, dst, d, n)
            if src == dst:
                assert d == RoutingPath.LOCAL
                assert hops == 0
                assert hop_count(src, dst, invert(d), n) == 0
                continue
            assert hops <= n / 2
            assert hop_count(src, dst, invert(d), n) == n - hops


def test_tie_at_half_ring_prefers_clockwise():
    assert shortest_direction(0, 2, 4) == RoutingPath.CLOCK
    assert shortest_direction(2, 0, 4) == RoutingPath.CLOCK
    assert shortest_direction(1, 4, 6) == RoutingPath.CLOCK


def test_counter_clockwise_when_shorter():
    assert shortest_direction(0, 3, 4) == RoutingPath.COUNTER
    assert hop_count(0, 3, RoutingPath.COUNTER, 4) == 1


def test_next_hop_wraps_around():
    assert next_hop(3, RoutingPath.CLOCK, 4) == 0
    assert next_hop(0, RoutingPath.COUNTER, 4) == 3
    assert next_hop(1, RoutingPath.CLOCK, 4) == 2


def test_next_hop_local_is_invalid():
    with pytest.raises(ValueError):
        next_hop(1, RoutingPath.LOCAL, 4)


def test_invert():
    assert invert(RoutingPath.CLOCK) == RoutingPath.COUNTER
    assert invert(RoutingPath.COUNTER) == RoutingPath.CLOCK
    assert invert(RoutingPath.LOCAL) == RoutingPath.LOCAL


@pytest.mark.parametrize("args", [(0, 1, 2), (0, 3, 3), (-1, 0, 4), (0, 4, 4)])
def test_invalid_ring_or_index(args):
    with pytest.raises(ValueError):
        shortest_direction(*args)


def test_walk_follows_direction():
    assert walk(0, 2, RoutingPath.CLOCK, 4) == [(0, 1), (1, 2)]
    assert walk(0, 2, RoutingPath.COUNTER, 4) == [(0, 3), (3, 2)]
    assert walk(1, 1, RoutingPath.LOCAL, 4) == []


def test_ring_path_local_must_not_mix():
    path = RingPath(pgw_idx=1, sgw_idx=1)
    with pytest.raises(ValueError):
        path.set_default_paths(RoutingPath.CLOCK, RoutingPath.COUNTER)
    path.set_default_paths(RoutingPath.LOCAL, RoutingPath.LOCAL)
    path.invert_paths()
    assert path.down_path == RoutingPath.LOCAL
    assert path.up_path == RoutingPath.LOCAL


def test_ring_path_invert_and_reset():
    path = RingPath(pgw_idx=0, sgw_idx=1)
    path.set_default_paths(RoutingPath.CLOCK, RoutingPath.COUNTER)
    path.invert_paths()
    assert (path.down_path, path.up_path) == (RoutingPath.COUNTER, RoutingPath.CLOCK)
    assert not path.is_default_path
    path.reset_to_default()
    assert (path.down_path, path.up_path) == (RoutingPath.CLOCK, RoutingPath.COUNTER)
    assert path.is_default_path


def test_ring_path_uplink_must_be_inverse():
    path = RingPath(pgw_idx=0, sgw_idx=1)
    with pytest.raises(ValueError):
        path.set_default_paths(RoutingPath.CLOCK, RoutingPath.CLOCK)


def test_path_manager_gateway_registry():
    mgr = PathManager([11, 12, 13, 14])
    mgr.register_gateway("10.0.0.1", 0)
    mgr.register_gateway("10.0.0.3", 2)
    with pytest.raises(BackhaulInvariantError):
        mgr.register_gateway("10.0.0.1", 1)
    with pytest.raises(BackhaulInvariantError):
        mgr.get_switch_index("10.9.9.9")
    with pytest.raises(ValueError):
        mgr.register_gateway("10.0.0.9", 4)
    assert mgr.get_dpid(2) == 13
    assert mgr.get_index(14) == 3


def test_path_manager_hops_use_dpids():
    mgr = PathManager([11, 12, 13, 14])
    mgr.register_gateway("pgw", 0)
    mgr.register_gateway("sgw", 3)
    path = mgr.new_ring_path("pgw", "sgw")
    assert path.down_path == RoutingPath.COUNTER
    assert mgr.downlink_hops(path) == [(11, 14)]
    assert mgr.uplink_hops(path) == [(14, 11)]

    path.invert_paths()
    assert mgr.downlink_hops(path) == [(11, 12), (12, 13), (13, 14)]
    assert mgr.uplink_hops(path) == [(14, 13), (13, 12), (12, 11)]

    mgr.reset_path(path)
    assert path.down_path == RoutingPath.COUNTER
    assert path.is_default_path


def test_path_manager_rejects_small_ring():
    with pytest.raises(ValueError):
        PathManager([1, 2])
    with pytest.raises(ValueError):
        PathManager([1, 2, 2])
