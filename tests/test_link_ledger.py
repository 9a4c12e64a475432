import random

import pytest

from bearer_models import BackhaulInvariantError
from link_ledger import LinkDirection, LinkLedger, LinkLedgerBook

MBPS = 1_000_000


def scenario_link(**kw):
    params = dict(capacity_bps=100 * MBPS, gbr_quota=0.4,
                  safeguard_bps=5 * MBPS, adjust_step_bps=5 * MBPS)
    params.update(kw)
    return LinkLedger(1, 2, **params)


def assert_invariants(link):
    for direction in LinkDirection:
        st = link.state(direction)
        assert 0 <= st.reserved_gbr <= link.max_gbr_bps
        assert link.floor_bps <= st.allowed_non_gbr <= link.ceiling_bps
        assert link.capacity_bps - st.reserved_gbr - st.allowed_non_gbr >= link.safeguard_bps


def test_initial_ceiling():
    link = scenario_link()
    assert link.allowed_non_gbr(1, 2) == 95 * MBPS
    assert link.allowed_non_gbr(2, 1) == 95 * MBPS
    assert link.floor_bps == 55 * MBPS
    assert_invariants(link)


def test_reserve_lowers_ceiling_in_steps():
    link = scenario_link()
    ok, changes = link.reserve_gbr(1, 2, 30 * MBPS)
    assert ok
    assert link.reserved_gbr(1, 2) == 30 * MBPS
    assert link.allowed_non_gbr(1, 2) == 65 * MBPS
    assert [c.allowed_bps for c in changes] == [90 * MBPS, 85 * MBPS, 80 * MBPS,
                                                75 * MBPS, 70 * MBPS, 65 * MBPS]
    assert all(c.direction == LinkDirection.FWD for c in changes)
    # 反方向不受影响
    assert link.reserved_gbr(2, 1) == 0
    assert link.allowed_non_gbr(2, 1) == 95 * MBPS
    assert_invariants(link)


def test_reserve_over_quota_fails_without_mutation():
    link = scenario_link()
    link.reserve_gbr(1, 2, 30 * MBPS)
    assert not link.has_gbr_capacity(1, 2, 20 * MBPS)
    ok, changes = link.reserve_gbr(1, 2, 20 * MBPS)
    assert not ok
    assert changes == []
    assert link.reserved_gbr(1, 2) == 30 * MBPS
    assert link.allowed_non_gbr(1, 2) == 65 * MBPS
    assert link.has_gbr_capacity(2, 1, 20 * MBPS)


def test_release_restores_ceiling():
    link = scenario_link()
    link.reserve_gbr(1, 2, 30 * MBPS)
    ok, changes = link.release_gbr(1, 2, 30 * MBPS)
    assert ok
    assert link.reserved_gbr(1, 2) == 0
    assert link.allowed_non_gbr(1, 2) == 95 * MBPS
    assert changes[-1].allowed_bps == 95 * MBPS
    assert_invariants(link)


def test_release_underflow_is_rejected():
    link = scenario_link()
    link.reserve_gbr(2, 1, 10 * MBPS)
    ok, changes = link.release_gbr(2, 1, 11 * MBPS)
    assert not ok
    assert changes == []
    assert link.reserved_gbr(2, 1) == 10 * MBPS
    ok, _ = link.release_gbr(1, 2, 1)
    assert not ok


@pytest.mark.parametrize("step", [5 * MBPS, 4 * MBPS, 3 * MBPS, 7 * MBPS])
@pytest.mark.parametrize("quota", [0.35, 0.4, 0.5])
def test_round_trip_is_exact(step, quota):
    link = scenario_link(gbr_quota=quota, adjust_step_bps=step)
    link.reserve_gbr(1, 2, 3 * MBPS)
    for rate in (1, 2 * MBPS, 7 * MBPS + 123, 13 * MBPS, link.max_gbr_bps - 3 * MBPS):
        before = (link.reserved_gbr(1, 2), link.allowed_non_gbr(1, 2))
        ok, _ = link.reserve_gbr(1, 2, rate)
        assert ok
        assert_invariants(link)
        ok, _ = link.release_gbr(1, 2, rate)
        assert ok
        assert (link.reserved_gbr(1, 2), link.allowed_non_gbr(1, 2)) == before


def test_full_quota_reaches_floor_off_step_grid():
    # quota 0.35 / step 4M：floor = 60M 不在 95M - k*4M 上
    link = scenario_link(gbr_quota=0.35, adjust_step_bps=4 * MBPS)
    ok, _ = link.reserve_gbr(1, 2, 35 * MBPS)
    assert ok
    assert link.allowed_non_gbr(1, 2) == link.floor_bps == 60 * MBPS
    ok, changes = link.release_gbr(1, 2, 35 * MBPS)
    assert ok
    assert changes[0].allowed_bps == 63 * MBPS
    assert link.allowed_non_gbr(1, 2) == 95 * MBPS


def test_random_sequences_keep_invariants():
    rnd = random.Random(20251209)
    for quota in (0.2, 0.35, 0.5):
        link = scenario_link(gbr_quota=quota, adjust_step_bps=rnd.choice([1, 3, 5]) * MBPS)
        held = {(1, 2): [], (2, 1): []}
        for _ in range(400):
            src, dst = rnd.choice([(1, 2), (2, 1)])
            if held[(src, dst)] and rnd.random() < 0.45:
                rate = held[(src, dst)].pop(rnd.randrange(len(held[(src, dst)])))
                ok, _ = link.release_gbr(src, dst, rate)
                assert ok
            else:
                rate = rnd.randint(1, 15) * MBPS // 2
                expect = link.has_gbr_capacity(src, dst, rate)
                ok, _ = link.reserve_gbr(src, dst, rate)
                assert ok == expect
                if ok:
                    held[(src, dst)].append(rate)
            assert_invariants(link)
            assert link.reserved_gbr(src, dst) == sum(held[(src, dst)])


def test_half_duplex_uses_forward_only():
    link = scenario_link(full_duplex=False)
    assert link.get_direction(1, 2) == LinkDirection.FWD
    assert link.get_direction(2, 1) == LinkDirection.FWD
    link.reserve_gbr(2, 1, 10 * MBPS)
    assert link.reserved_gbr(1, 2) == 10 * MBPS
    assert link.state(LinkDirection.BWD).reserved_gbr == 0


def test_full_duplex_direction_follows_registration_order():
    link = LinkLedger(4, 1, 100 * MBPS)
    assert link.get_direction(4, 1) == LinkDirection.FWD
    assert link.get_direction(1, 4) == LinkDirection.BWD
    with pytest.raises(ValueError):
        link.get_direction(1, 2)


@pytest.mark.parametrize("kw", [
    dict(capacity_bps=0),
    dict(gbr_quota=0.6),
    dict(gbr_quota=0),
    dict(adjust_step_bps=0),
    dict(ewma_alpha=0),
])
def test_invalid_parameters(kw):
    with pytest.raises(ValueError):
        scenario_link(**kw)


def test_ewma_throughput():
    link = scenario_link()
    link.add_tx_bytes(1, 2, True, 1_250_000)
    link.update_statistics(1.0)
    assert link.ewma_throughput(1, 2) == pytest.approx(2_500_000)
    link.update_statistics(1.0)
    assert link.ewma_throughput(1, 2) == pytest.approx(1_875_000)
    assert link.ewma_throughput(2, 1) == 0
    row = link.snapshot()[0]
    assert row["direction"] == "FWD"
    assert row["ewma_gbr_bps"] == 1_875_000
    assert row["ewma_non_gbr_bps"] == 0


def test_ledger_book():
    book = LinkLedgerBook()
    book.add(LinkLedger(2, 1, 100 * MBPS))
    book.add(LinkLedger(2, 3, 100 * MBPS))
    assert book.get(1, 2) is book.get(2, 1)
    assert len(book) == 2
    with pytest.raises(BackhaulInvariantError):
        book.add(LinkLedger(1, 2, 100 * MBPS))
    with pytest.raises(BackhaulInvariantError):
        book.get(1, 3)
    assert [link.key for link in book] == [(1, 2), (2, 3)]
