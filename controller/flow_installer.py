# controller/flow_installer.py
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

from bearer_models import Bearer, RoutingPath
from dscp_manager import DSCP_BE
from link_ledger import CeilingChange, LinkDirection, LinkLedger
from path_manager import PathManager

LOG = logging.getLogger('flow_installer')

# 流水线：
#   Table 0: 入口，全部交给 Table 1
#   Table 1: 承载分类（只在入口交换机上），写 metadata=方向，goto 2
#   Table 2: 环路由（本地交付 / 按 metadata 或入端口选 group）
INPUT_TABLE = 0
BEARER_TABLE = 1
ROUTING_TABLE = 2

COOKIE_STRICT_MASK = 0xFFFFFFFFFFFFFFFF
ETH_TYPE_IP = 0x0800


@dataclass
class FlowRule:
    table_id: int
    priority: int
    match: Dict[str, object] = field(default_factory=dict)
    command: str = "add"  # add / delete
    cookie: int = 0
    cookie_mask: int = 0
    idle_timeout: int = 0
    meter_id: Optional[int] = None
    dscp: Optional[int] = None
    queue_id: Optional[int] = None
    group_id: Optional[int] = None
    output: Optional[int] = None
    metadata: Optional[int] = None
    goto_table: Optional[int] = None
    send_flow_rem: bool = False


@dataclass
class MeterRule:
    meter_id: int
    rate_kbps: int = 0
    command: str = "add"  # add / modify / delete


@dataclass
class GroupRule:
    group_id: int
    out_port: int
    command: str = "add"


Rule = Union[FlowRule, MeterRule, GroupRule]


class DatapathRulePusher:
    """
    把逻辑规则转成 OpenFlow 1.3 消息发给交换机。
    依赖 RyuApp 提供 datapaths 字典：dpid -> datapath
    - push:     交换机已连接才发送，未连接返回 False
    - schedule: 环规则用；交换机未连接时不发，上线时由 restore 按当前状态整套重下
    """

    def __init__(self, datapaths: Dict[int, object]):
        self.datapaths = datapaths

    def push(self, dpid: int, rule: Rule) -> bool:
        dp = self.datapaths.get(dpid)
        if dp is None:
            LOG.warning("[pusher] s%s not connected, drop %s", dpid, type(rule).__name__)
            return False
        dp.send_msg(self._to_msg(dp, rule))
        return True

    def schedule(self, dpid: int, rule: Rule):
        if dpid not in self.datapaths:
            LOG.debug("[pusher] s%s offline, %s deferred to reconnect", dpid, type(rule).__name__)
            return
        self.push(dpid, rule)

    def reset(self, dp):
        """清空交换机上残留的 flow / group / meter"""
        ofp = dp.ofproto
        parser = dp.ofproto_parser
        dp.send_msg(parser.OFPFlowMod(
            datapath=dp,
            table_id=ofp.OFPTT_ALL,
            command=ofp.OFPFC_DELETE,
            out_port=ofp.OFPP_ANY,
            out_group=ofp.OFPG_ANY,
            match=parser.OFPMatch()
        ))
        dp.send_msg(parser.OFPGroupMod(dp, ofp.OFPGC_DELETE, ofp.OFPGT_INDIRECT, ofp.OFPG_ALL, []))
        dp.send_msg(parser.OFPMeterMod(dp, command=ofp.OFPMC_DELETE, flags=0,
                                       meter_id=ofp.OFPM_ALL, bands=[]))

    def restore(self, dp, rules: List[Rule]) -> int:
        """交换机（重新）连上：清空后按当前状态整套重下"""
        self.reset(dp)
        for rule in rules:
            dp.send_msg(self._to_msg(dp, rule))
        return len(rules)

    def _to_msg(self, dp, rule: Rule):
        if isinstance(rule, FlowRule):
            return self._flow_mod(dp, rule)
        if isinstance(rule, MeterRule):
            return self._meter_mod(dp, rule)
        return self._group_mod(dp, rule)

    def _flow_mod(self, dp, rule: FlowRule):
        ofp = dp.ofproto
        parser = dp.ofproto_parser
        match = parser.OFPMatch(**rule.match)

        if rule.command == "delete":
            return parser.OFPFlowMod(
                datapath=dp,
                table_id=rule.table_id,
                command=ofp.OFPFC_DELETE,
                cookie=rule.cookie,
                cookie_mask=rule.cookie_mask,
                out_port=ofp.OFPP_ANY,
                out_group=ofp.OFPG_ANY,
                match=match
            )

        inst = []
        if rule.meter_id is not None:
            inst.append(parser.OFPInstructionMeter(rule.meter_id, ofp.OFPIT_METER))
        actions = []
        if rule.dscp is not None:
            actions.append(parser.OFPActionSetField(ip_dscp=rule.dscp))
        if rule.queue_id is not None:
            actions.append(parser.OFPActionSetQueue(rule.queue_id))
        if rule.group_id is not None:
            actions.append(parser.OFPActionGroup(rule.group_id))
        if rule.output is not None:
            actions.append(parser.OFPActionOutput(rule.output))
        if actions:
            inst.append(parser.OFPInstructionActions(ofp.OFPIT_APPLY_ACTIONS, actions))
        if rule.metadata is not None:
            inst.append(parser.OFPInstructionWriteMetadata(rule.metadata, 0xff))
        if rule.goto_table is not None:
            inst.append(parser.OFPInstructionGotoTable(rule.goto_table))

        return parser.OFPFlowMod(
            datapath=dp,
            cookie=rule.cookie,
            table_id=rule.table_id,
            command=ofp.OFPFC_ADD,
            priority=rule.priority,
            match=match,
            instructions=inst,
            hard_timeout=0,
            idle_timeout=rule.idle_timeout,
            flags=ofp.OFPFF_SEND_FLOW_REM if rule.send_flow_rem else 0
        )

    def _meter_mod(self, dp, rule: MeterRule):
        ofp = dp.ofproto
        parser = dp.ofproto_parser
        command = {
            "add": ofp.OFPMC_ADD,
            "modify": ofp.OFPMC_MODIFY,
            "delete": ofp.OFPMC_DELETE,
        }[rule.command]
        bands = []
        if rule.command != "delete":
            bands = [parser.OFPMeterBandDrop(rate=rule.rate_kbps, burst_size=0)]
        return parser.OFPMeterMod(dp, command=command, flags=ofp.OFPMF_KBPS,
                                  meter_id=rule.meter_id, bands=bands)

    def _group_mod(self, dp, rule: GroupRule):
        ofp = dp.ofproto
        parser = dp.ofproto_parser
        command = ofp.OFPGC_ADD if rule.command == "add" else ofp.OFPGC_DELETE
        buckets = [parser.OFPBucket(actions=[parser.OFPActionOutput(rule.out_port)])]
        return parser.OFPGroupMod(dp, command, ofp.OFPGT_INDIRECT, rule.group_id, buckets)


class FlowInstaller:
    """
    承载规则 / 环转发规则的安装与删除，只产生逻辑规则，交给 pusher 下发。
    承载规则只装在入口交换机：
      下行 -> P-GW 所在环交换机，上行 -> S-GW 所在环交换机
    cookie = TEID，删除时按 cookie 严格匹配。
    """

    def __init__(self, pusher, path_mgr: PathManager,
                 clockwise_port: int, counter_port: int, gateway_port: int):
        self.pusher = pusher
        self.path_mgr = path_mgr
        self.clockwise_port = clockwise_port
        self.counter_port = counter_port
        self.gateway_port = gateway_port

    # ----------------------------------------------------
    # 承载规则
    # ----------------------------------------------------
    def _bearer_rule(self, bearer: Bearer, dst_addr: str, direction: RoutingPath,
                     meter_id: Optional[int]) -> FlowRule:
        return FlowRule(
            table_id=BEARER_TABLE,
            priority=bearer.priority,
            match={"eth_type": ETH_TYPE_IP, "ipv4_dst": dst_addr, "tunnel_id": bearer.teid},
            cookie=bearer.teid,
            idle_timeout=bearer.timeout,
            meter_id=meter_id,
            dscp=bearer.dscp if bearer.dscp != DSCP_BE else None,
            queue_id=bearer.queue_id if bearer.queue_id else None,
            metadata=int(direction),
            goto_table=ROUTING_TABLE,
            send_flow_rem=True,
        )

    def bearer_rules(self, bearer: Bearer) -> List[Tuple[int, Rule, str]]:
        """按下发顺序返回 (dpid, rule, "dl"/"ul")，meter 先于引用它的 flow"""
        pgw_dpid = self.path_mgr.get_dpid(bearer.path.pgw_idx)
        sgw_dpid = self.path_mgr.get_dpid(bearer.path.sgw_idx)
        rules: List[Tuple[int, Rule, str]] = []

        if bearer.has_downlink:
            meter_id = None
            if bearer.qos.mbr_dl:
                meter_id = bearer.teid
                if not bearer.dl_meter_installed:
                    rules.append((pgw_dpid, MeterRule(meter_id, bearer.qos.mbr_dl // 1000), "dl"))
            rules.append((pgw_dpid, self._bearer_rule(
                bearer, bearer.sgw_addr, bearer.path.down_path, meter_id), "dl"))

        if bearer.has_uplink:
            meter_id = None
            # 本地路径两条规则在同一台交换机上，meter id 冲突，只限下行
            if bearer.qos.mbr_ul and not (bearer.path.is_local() and bearer.qos.mbr_dl):
                meter_id = bearer.teid
                if not bearer.ul_meter_installed:
                    rules.append((sgw_dpid, MeterRule(meter_id, bearer.qos.mbr_ul // 1000), "ul"))
            rules.append((sgw_dpid, self._bearer_rule(
                bearer, bearer.pgw_addr, bearer.path.up_path, meter_id), "ul"))
        return rules

    def install_bearer(self, bearer: Bearer) -> bool:
        """全部规则下发成功才返回 True；部分失败不回滚"""
        ok = True
        for dpid, rule, leg in self.bearer_rules(bearer):
            pushed = self.pusher.push(dpid, rule)
            if pushed and isinstance(rule, MeterRule):
                if leg == "dl":
                    bearer.dl_meter_installed = True
                else:
                    bearer.ul_meter_installed = True
            ok = ok and pushed
        LOG.info("[installer] install teid=%#x prio=%d timeout=%d down=%s ok=%s",
                 bearer.teid, bearer.priority, bearer.timeout,
                 bearer.path.down_path.name, ok)
        return ok

    def remove_bearer(self, bearer: Bearer) -> bool:
        pgw_dpid = self.path_mgr.get_dpid(bearer.path.pgw_idx)
        sgw_dpid = self.path_mgr.get_dpid(bearer.path.sgw_idx)
        ok = True
        for dpid in sorted({pgw_dpid, sgw_dpid}):
            rule = FlowRule(table_id=BEARER_TABLE, priority=0, command="delete",
                            cookie=bearer.teid, cookie_mask=COOKIE_STRICT_MASK)
            ok = self.pusher.push(dpid, rule) and ok

        if bearer.dl_meter_installed:
            if self.pusher.push(pgw_dpid, MeterRule(bearer.teid, command="delete")):
                bearer.dl_meter_installed = False
            else:
                ok = False
        if bearer.ul_meter_installed:
            if self.pusher.push(sgw_dpid, MeterRule(bearer.teid, command="delete")):
                bearer.ul_meter_installed = False
            else:
                ok = False
        LOG.info("[installer] remove teid=%#x ok=%s", bearer.teid, ok)
        return ok

    # ----------------------------------------------------
    # 环链路 Non-GBR meter
    # ----------------------------------------------------
    @staticmethod
    def _meter_targets(sw0: int, sw1: int, direction: LinkDirection,
                       full_duplex: bool) -> List[Tuple[int, int]]:
        """
        链路按顺时针注册：sw0 -> sw1 是 FWD（meter CLOCK 装在 sw0），
        sw1 -> sw0 是 BWD（meter COUNTER 装在 sw1）。
        半双工链路只有 FWD 账本，两侧 meter 同时调整。
        """
        if not full_duplex:
            return [(sw0, int(RoutingPath.CLOCK)), (sw1, int(RoutingPath.COUNTER))]
        if direction == LinkDirection.FWD:
            return [(sw0, int(RoutingPath.CLOCK))]
        return [(sw1, int(RoutingPath.COUNTER))]

    def apply_adjustments(self, changes: List[CeilingChange]) -> bool:
        """同一链路方向的多次调整合并成一次 meter 修改（取最终速率）"""
        final: Dict[Tuple[int, int, LinkDirection], CeilingChange] = {}
        for change in changes:
            final[(change.sw0, change.sw1, change.direction)] = change

        ok = True
        for (sw0, sw1, direction), change in final.items():
            rate_kbps = change.allowed_bps // 1000
            for dpid, meter_id in self._meter_targets(sw0, sw1, direction, change.full_duplex):
                rule = MeterRule(meter_id, rate_kbps, command="modify")
                if not self.pusher.push(dpid, rule):
                    self.pusher.schedule(dpid, rule)
                    ok = False
                LOG.debug("[installer] meter s%d id=%d -> %d kbps", dpid, meter_id, rate_kbps)
        return ok

    # ----------------------------------------------------
    # 拓扑建立时的规则
    # ----------------------------------------------------
    def link_rules(self, link: LinkLedger) -> List[Tuple[int, Rule]]:
        """链路两端的转发 group + Non-GBR meter（按账本当前 allowed）"""
        fwd_kbps = link.state(LinkDirection.FWD).allowed_non_gbr // 1000
        bwd_kbps = link.state(LinkDirection.BWD if link.full_duplex
                              else LinkDirection.FWD).allowed_non_gbr // 1000
        return [
            (link.sw0, GroupRule(int(RoutingPath.CLOCK), self.clockwise_port)),
            (link.sw1, GroupRule(int(RoutingPath.COUNTER), self.counter_port)),
            (link.sw0, MeterRule(int(RoutingPath.CLOCK), fwd_kbps)),
            (link.sw1, MeterRule(int(RoutingPath.COUNTER), bwd_kbps)),
        ]

    def install_link(self, link: LinkLedger):
        for dpid, rule in self.link_rules(link):
            self.pusher.schedule(dpid, rule)

    def pipeline_rules(self, dpid: int) -> List[FlowRule]:
        idx = self.path_mgr.get_index(dpid)
        rules = [
            FlowRule(INPUT_TABLE, 0, goto_table=BEARER_TABLE),
            FlowRule(BEARER_TABLE, 0, goto_table=ROUTING_TABLE),
        ]
        # 本地交付：目的是挂在本交换机上的网关
        for addr, gw_idx in sorted(self.path_mgr.gateways().items()):
            if gw_idx == idx:
                rules.append(FlowRule(ROUTING_TABLE, 300,
                                      match={"eth_type": ETH_TYPE_IP, "ipv4_dst": addr},
                                      output=self.gateway_port))

        ring = ((RoutingPath.CLOCK, self.counter_port), (RoutingPath.COUNTER, self.clockwise_port))
        for direction, in_port in ring:
            group = int(direction)
            # 入口交换机：按承载规则写入的 metadata 选方向，Non-GBR 走链路 meter
            rules.append(FlowRule(ROUTING_TABLE, 200,
                                  match={"metadata": group, "eth_type": ETH_TYPE_IP, "ip_dscp": DSCP_BE},
                                  meter_id=group, group_id=group))
            rules.append(FlowRule(ROUTING_TABLE, 150, match={"metadata": group}, group_id=group))
            # 中转交换机：从反方向端口进来的继续沿原方向走
            rules.append(FlowRule(ROUTING_TABLE, 100,
                                  match={"in_port": in_port, "eth_type": ETH_TYPE_IP, "ip_dscp": DSCP_BE},
                                  meter_id=group, group_id=group))
            rules.append(FlowRule(ROUTING_TABLE, 50, match={"in_port": in_port}, group_id=group))
        return rules

    def install_transit_rules(self):
        """环建好之后，给每台交换机排队下发默认流水线和中转规则"""
        for dpid in self.path_mgr.switches:
            for rule in self.pipeline_rules(dpid):
                self.pusher.schedule(dpid, rule)

    def ring_rules(self, dpid: int, links) -> List[Rule]:
        """交换机上线时要下发的全部环规则：group、meter 在前，流水线在后"""
        rules: List[Rule] = []
        for link in links:
            rules.extend(rule for sw, rule in self.link_rules(link) if sw == dpid)
        rules.extend(self.pipeline_rules(dpid))
        return rules
