from types import SimpleNamespace

from flow_installer import (BEARER_TABLE, COOKIE_STRICT_MASK, ROUTING_TABLE,
                            DatapathRulePusher, FlowRule, GroupRule, MeterRule)
from bearer_models import RoutingPath
from dscp_manager import DSCP_BE, DSCP_EF
from link_ledger import CeilingChange, LinkDirection

MBPS = 1_000_000


def test_bearer_rules_order_and_fields(core, make_bearer):
    bearer = make_bearer(core, 0x101, sgw_addr="10.2.0.4", qci=1,
                         mbr_dl=8 * MBPS, mbr_ul=2 * MBPS)
    bearer.priority = 0x2000
    bearer.dscp = DSCP_EF
    bearer.queue_id = 2
    rules = core.installer.bearer_rules(bearer)

    assert [(dpid, type(r).__name__, leg) for dpid, r, leg in rules] == [
        (1, "MeterRule", "dl"), (1, "FlowRule", "dl"),
        (4, "MeterRule", "ul"), (4, "FlowRule", "ul"),
    ]
    assert rules[0][1] == MeterRule(0x101, 8000)
    assert rules[2][1] == MeterRule(0x101, 2000)

    dl = rules[1][1]
    assert dl.table_id == BEARER_TABLE and dl.goto_table == ROUTING_TABLE
    assert dl.match == {"eth_type": 0x0800, "ipv4_dst": "10.2.0.4", "tunnel_id": 0x101}
    assert dl.cookie == 0x101 and dl.priority == 0x2000
    assert dl.idle_timeout == 15 and dl.send_flow_rem
    assert dl.metadata == int(RoutingPath.COUNTER)
    assert dl.meter_id == 0x101
    assert dl.dscp == DSCP_EF and dl.queue_id == 2

    ul = rules[3][1]
    assert ul.match["ipv4_dst"] == "10.2.0.1"
    assert ul.metadata == int(RoutingPath.CLOCK)


def test_best_effort_bearer_has_no_marking(core, make_bearer):
    bearer = make_bearer(core, 0x101)
    bearer.has_uplink = False
    rules = core.installer.bearer_rules(bearer)
    assert len(rules) == 1
    _, rule, leg = rules[0]
    assert leg == "dl"
    assert rule.dscp is None and rule.queue_id is None and rule.meter_id is None
    assert bearer.dscp == DSCP_BE


def test_meters_are_added_once(core, make_bearer, pusher):
    bearer = make_bearer(core, 0x101, mbr_dl=8 * MBPS, mbr_ul=2 * MBPS)
    bearer.activate()
    assert core.installer.install_bearer(bearer)
    assert bearer.dl_meter_installed and bearer.ul_meter_installed

    pusher.clear()
    bearer.increase_priority()
    assert core.installer.install_bearer(bearer)
    assert not any(isinstance(r, MeterRule) for _, r in pusher.pushed)
    assert all(r.meter_id == 0x101 for _, r in pusher.pushed)


def test_local_path_meters_only_downlink(core, make_bearer):
    bearer = make_bearer(core, 0x101, sgw_addr="10.2.0.1", mbr_dl=8 * MBPS, mbr_ul=2 * MBPS)
    rules = core.installer.bearer_rules(bearer)
    meters = [r for _, r, _ in rules if isinstance(r, MeterRule)]
    assert meters == [MeterRule(0x101, 8000)]
    flows = [r for _, r, _ in rules if isinstance(r, FlowRule)]
    assert [f.metadata for f in flows] == [int(RoutingPath.LOCAL)] * 2
    assert flows[1].meter_id is None
    assert {dpid for dpid, _, _ in rules} == {1}


def test_install_reports_partial_failure(core, make_bearer, pusher):
    bearer = make_bearer(core, 0x101, mbr_ul=2 * MBPS)
    pusher.connected.discard(2)
    assert not core.installer.install_bearer(bearer)
    assert not bearer.ul_meter_installed
    assert any(dpid == 1 for dpid, _ in pusher.pushed)


def test_remove_bearer_by_strict_cookie(core, make_bearer, pusher):
    bearer = make_bearer(core, 0x101, sgw_addr="10.2.0.1", mbr_dl=8 * MBPS)
    bearer.dl_meter_installed = True
    assert core.installer.remove_bearer(bearer)
    assert pusher.pushed == [
        (1, FlowRule(BEARER_TABLE, 0, command="delete",
                     cookie=0x101, cookie_mask=COOKIE_STRICT_MASK)),
        (1, MeterRule(0x101, command="delete")),
    ]
    assert not bearer.dl_meter_installed


def test_apply_adjustments_coalesces(core, pusher):
    changes = [
        CeilingChange(1, 2, LinkDirection.FWD, 90 * MBPS),
        CeilingChange(1, 2, LinkDirection.FWD, 85 * MBPS),
        CeilingChange(2, 3, LinkDirection.BWD, 90 * MBPS),
    ]
    assert core.installer.apply_adjustments(changes)
    assert pusher.pushed == [
        (1, MeterRule(int(RoutingPath.CLOCK), 85_000, "modify")),
        (3, MeterRule(int(RoutingPath.COUNTER), 90_000, "modify")),
    ]


def test_apply_adjustments_half_duplex_and_offline(core, pusher):
    pusher.connected.discard(2)
    change = CeilingChange(1, 2, LinkDirection.FWD, 70 * MBPS, full_duplex=False)
    assert not core.installer.apply_adjustments([change])
    assert pusher.pushed == [(1, MeterRule(int(RoutingPath.CLOCK), 70_000, "modify"))]
    assert (2, MeterRule(int(RoutingPath.COUNTER), 70_000, "modify")) in pusher.scheduled


def test_link_groups_and_meters_are_scheduled(core, pusher):
    # 4 条链路：每台交换机都有 CLOCK / COUNTER 两个 group 和 meter
    for dpid in range(1, 5):
        rules = [r for d, r in pusher.scheduled if d == dpid]
        assert GroupRule(int(RoutingPath.CLOCK), 2) in rules
        assert GroupRule(int(RoutingPath.COUNTER), 3) in rules
        assert MeterRule(int(RoutingPath.CLOCK), 95_000) in rules
        assert MeterRule(int(RoutingPath.COUNTER), 95_000) in rules


def test_pipeline_rules(core):
    rules = core.installer.pipeline_rules(2)
    local = [r for r in rules if r.priority == 300]
    assert len(local) == 1
    assert local[0].match["ipv4_dst"] == "10.2.0.2"
    assert local[0].output == 1

    transit = [r for r in rules if r.priority == 50]
    assert {(r.match["in_port"], r.group_id) for r in transit} == {
        (3, int(RoutingPath.CLOCK)), (2, int(RoutingPath.COUNTER))}
    metered = [r for r in rules if r.priority in (100, 200)]
    assert all(r.meter_id == r.group_id for r in metered)
    assert all(r.match["ip_dscp"] == DSCP_BE for r in metered)


class _Parser:
    """把每个构造调用记成 (名字, args, kwargs)"""

    def __getattr__(self, name):
        def build(*args, **kwargs):
            return (name, args, kwargs)
        return build


class _Datapath:
    def __init__(self, dpid):
        self.id = dpid
        self.ofproto = SimpleNamespace(
            OFPFC_ADD=0, OFPFC_DELETE=3, OFPP_ANY=0xffffffff, OFPG_ANY=0xffffffff,
            OFPIT_METER=6, OFPIT_APPLY_ACTIONS=4, OFPFF_SEND_FLOW_REM=1,
            OFPMC_ADD=0, OFPMC_MODIFY=1, OFPMC_DELETE=2, OFPMF_KBPS=1,
            OFPGC_ADD=0, OFPGC_DELETE=2, OFPGT_INDIRECT=3,
            OFPTT_ALL=0xff, OFPG_ALL=0xfffffffc, OFPM_ALL=0xffffffff)
        self.ofproto_parser = _Parser()
        self.sent = []

    def send_msg(self, msg):
        self.sent.append(msg)


def test_rule_pusher_restores_on_every_connect():
    datapaths = {}
    pusher = DatapathRulePusher(datapaths)
    assert not pusher.push(1, MeterRule(1, 1000))
    pusher.schedule(1, MeterRule(1, 1000))

    rules = [GroupRule(1, 2), MeterRule(1, 95_000)]
    for _ in range(2):
        dp = _Datapath(1)
        datapaths[1] = dp
        assert pusher.restore(dp, rules) == 2
        names = [msg[0] for msg in dp.sent]
        assert names == ["OFPFlowMod", "OFPGroupMod", "OFPMeterMod",
                         "OFPGroupMod", "OFPMeterMod"]

    group, meter = dp.sent[3:]
    assert group[1][1:4] == (0, 3, 1)
    assert meter[2]["command"] == 0 and meter[2]["meter_id"] == 1
    assert meter[2]["bands"][0][2] == {"rate": 95_000, "burst_size": 0}

    pusher.schedule(1, MeterRule(1, command="delete"))
    assert dp.sent[-1][2]["bands"] == []


def test_rule_pusher_flow_mods():
    dp = _Datapath(1)
    pusher = DatapathRulePusher({1: dp})
    rule = FlowRule(BEARER_TABLE, 0x2000, match={"tunnel_id": 5}, cookie=5,
                    idle_timeout=15, meter_id=5, dscp=DSCP_EF, metadata=1,
                    goto_table=ROUTING_TABLE, send_flow_rem=True)
    assert pusher.push(1, rule)
    name, _, kw = dp.sent[0]
    assert name == "OFPFlowMod"
    assert kw["priority"] == 0x2000 and kw["idle_timeout"] == 15
    assert kw["flags"] == 1 and kw["cookie"] == 5
    kinds = [inst[0] for inst in kw["instructions"]]
    assert kinds == ["OFPInstructionMeter", "OFPInstructionActions",
                     "OFPInstructionWriteMetadata", "OFPInstructionGotoTable"]

    pusher.push(1, FlowRule(BEARER_TABLE, 0, command="delete",
                            cookie=5, cookie_mask=COOKIE_STRICT_MASK))
    _, _, kw = dp.sent[1]
    assert kw["command"] == 3 and kw["cookie_mask"] == COOKIE_STRICT_MASK


def test_reset_clears_flows_groups_and_meters():
    dp = _Datapath(1)
    DatapathRulePusher({}).reset(dp)
    flow, group, meter = dp.sent
    assert flow[0] == "OFPFlowMod" and flow[2]["table_id"] == 0xff
    assert flow[2]["command"] == 3
    assert group[0] == "OFPGroupMod" and group[1][1] == 2 and group[1][3] == 0xfffffffc
    assert meter[0] == "OFPMeterMod" and meter[2]["meter_id"] == 0xffffffff


def test_ring_rules_follow_current_ledger(core, make_bearer):
    make_bearer(core, 0x101, qci=1, gbr_dl=10 * MBPS)
    assert core.manager.request_bearer(0x101) == (True, "ok")
    fwd_kbps = core.links.get(1, 2).state(LinkDirection.FWD).allowed_non_gbr // 1000
    assert fwd_kbps < 95_000

    rules = core.installer.ring_rules(1, core.links)
    head = rules[:4]
    assert GroupRule(int(RoutingPath.CLOCK), 2) in head
    assert GroupRule(int(RoutingPath.COUNTER), 3) in head
    assert MeterRule(int(RoutingPath.CLOCK), fwd_kbps) in head
    assert MeterRule(int(RoutingPath.COUNTER), 95_000) in head
    assert rules[4:] == core.installer.pipeline_rules(1)
