# controller/backhaul_app.py
import json
import os
from typing import Dict

from ryu.base import app_manager
from ryu.controller import ofp_event
from ryu.controller.handler import CONFIG_DISPATCHER, DEAD_DISPATCHER, MAIN_DISPATCHER, set_ev_cls
from ryu.ofproto import ofproto_v1_3
from ryu.app.wsgi import WSGIApplication, ControllerBase, route
from ryu import utils
from webob import Response

from backhaul_logger import SimpleLogger, alloc_run_id
from bearer_models import BearerQos
from controller_core import build_core
from flow_installer import BEARER_TABLE, DatapathRulePusher
from stats_collector import StatsCollector
from topo_config import (CONFIG_DIR, load_controller_config, load_ledger_params,
                         load_topology)

# REST 配置
BACKHAUL_INSTANCE_NAME = 'backhaul_api_app'
BASE_URL = '/backhaul'


class BackhaulController(app_manager.RyuApp):
    """
    核心 Ryu App：负责
    - 读取 config/ 下的拓扑和控制器配置，组装控制核心
    - 交换机握手后下发排队的环规则
    - FlowRemoved -> 承载自愈，FlowStats -> 链路吞吐
    - REST：会话 / 承载请求与释放 / 查询
    """
    OFP_VERSIONS = [ofproto_v1_3.OFP_VERSION]

    _CONTEXTS = {
        'wsgi': WSGIApplication
    }

    def __init__(self, *args, **kwargs):
        super(BackhaulController, self).__init__(*args, **kwargs)

        topo_cfg_file = os.path.join(CONFIG_DIR, 'topo_config.yml')
        ctrl_cfg_file = os.path.join(CONFIG_DIR, 'controller_config.yml')
        self.topo_cfg = load_topology(topo_cfg_file)
        self.ledger_cfg = load_ledger_params(topo_cfg_file)
        self.ctrl_cfg = load_controller_config(ctrl_cfg_file)

        # ==== 实验日志系统 ====
        self.run_ts, self.log_root = alloc_run_id(self.ctrl_cfg.log_dir)
        SimpleLogger.init(level=self.ctrl_cfg.log_level,
                          log_file=self.ctrl_cfg.log_file or None,
                          json_format=self.ctrl_cfg.log_json,
                          console=False,
                          run_id=self.run_ts,
                          run_dir=self.log_root)
        self.logger.info("Experiment run_ts=%s, log_root=%s", self.run_ts, self.log_root)

        # datapath 列表
        self.datapaths: Dict[int, object] = {}
        self.pusher = DatapathRulePusher(self.datapaths)
        self.core = build_core(self.topo_cfg, self.ledger_cfg, self.ctrl_cfg,
                               self.pusher, log_root=self.log_root)

        self.stats_collector = StatsCollector(
            self.datapaths, self.core.bearers, self.core.path_mgr, self.core.links,
            self.core.admission, self.logger,
            interval=self.ctrl_cfg.stats_interval,
            snapshot_interval=self.ctrl_cfg.snapshot_interval)
        self.stats_collector.start()

        wsgi = kwargs['wsgi']
        wsgi.register(BackhaulRestController, {BACKHAUL_INSTANCE_NAME: self})

    # =============== Ryu OpenFlow 事件 ===============

    @set_ev_cls(ofp_event.EventOFPSwitchFeatures, CONFIG_DISPATCHER)
    def switch_features_handler(self, ev):
        """交换机上线或重连：清空旧规则，按当前账本重下环规则，再重装入口在它上面的承载"""
        datapath = ev.msg.datapath
        dpid = datapath.id
        if dpid not in self.core.path_mgr.switches:
            self.logger.warning("Switch %s is not part of the ring, ignored", dpid)
            return
        self.logger.info("Switch %s connected", dpid)
        self.datapaths[dpid] = datapath
        n = self.pusher.restore(datapath, self.core.installer.ring_rules(dpid, self.core.links))
        self.logger.info(">>> s%s: %d ring rules pushed", dpid, n)
        teids = self.core.manager.on_switch_connected(dpid)
        self.logger.info(">>> s%s: %d bearers reinstalled", dpid, len(teids))

    @set_ev_cls(ofp_event.EventOFPStateChange, [MAIN_DISPATCHER, DEAD_DISPATCHER])
    def state_change_handler(self, ev):
        """维护 datapaths 字典"""
        datapath = ev.datapath
        if datapath.id is None or datapath.id not in self.core.path_mgr.switches:
            return
        if ev.state == MAIN_DISPATCHER:
            if datapath.id not in self.datapaths:
                self.datapaths[datapath.id] = datapath
        elif ev.state == DEAD_DISPATCHER:
            if datapath.id in self.datapaths:
                self.logger.warning("Switch %s disconnected", datapath.id)
                del self.datapaths[datapath.id]

    @set_ev_cls(ofp_event.EventOFPFlowRemoved, MAIN_DISPATCHER)
    def flow_removed_handler(self, ev):
        msg = ev.msg
        if msg.table_id != BEARER_TABLE or msg.cookie == 0:
            return
        # 会话删除后到达的通知，承载已不存在
        if self.core.bearers.find(msg.cookie) is None:
            self.logger.debug("FlowRemoved for released teid=%#x ignored", msg.cookie)
            return
        result = self.core.manager.on_rule_expired(msg.cookie, msg.priority)
        self.logger.info("FlowRemoved s%s teid=%#x prio=%d reason=%d -> %s",
                         msg.datapath.id, msg.cookie, msg.priority, msg.reason, result)

    @set_ev_cls(ofp_event.EventOFPErrorMsg, MAIN_DISPATCHER)
    def error_msg_handler(self, ev):
        msg = ev.msg
        self.logger.error(
            "OFPErrorMsg received: type=0x%02x code=0x%02x data=%s",
            msg.type, msg.code, utils.hex_array(msg.data)
        )

    @set_ev_cls(ofp_event.EventOFPFlowStatsReply, MAIN_DISPATCHER)
    def on_flow_stats_reply(self, ev):
        self.stats_collector.on_flow_stats(ev.msg.datapath.id, ev.msg.body)


# =============== REST Controller ===============

class BackhaulRestController(ControllerBase):
    def __init__(self, req, link, data, **config):
        super(BackhaulRestController, self).__init__(req, link, data, **config)
        self.app: BackhaulController = data[BACKHAUL_INSTANCE_NAME]
        self.core = self.app.core

    def _json_response(self, data, status=200):
        body = json.dumps(data)
        return Response(
            content_type='application/json',
            charset='utf-8',
            body=body.encode('utf-8'),
            status=status
        )

    def _parse_teid(self, text):
        try:
            teid = int(text, 0)
        except ValueError:
            return None
        if self.core.bearers.find(teid) is None:
            return None
        return teid

    @route('backhaul', BASE_URL + '/session', methods=['POST'])
    def create_session(self, req, **kwargs):
        """
        POST /backhaul/session
        {
            "imsi": 1,
            "cell_id": 1,
            "sgw_addr": "10.2.0.2",
            "bearers": [                       # 第一个是默认承载
                {"qci": 9},
                {"qci": 1, "gbr_dl": 2000000, "gbr_ul": 1000000,
                 "mbr_dl": 4000000, "mbr_ul": 2000000}
            ]
        }
        """
        try:
            msg = json.loads(req.body) if req.body else {}
            imsi = int(msg["imsi"])
            cell_id = int(msg.get("cell_id", 0))
            sgw_addr = str(msg["sgw_addr"])
            qos_list = [BearerQos(qci=int(b.get("qci", 9)),
                                  gbr_dl=int(b.get("gbr_dl", 0)),
                                  gbr_ul=int(b.get("gbr_ul", 0)),
                                  mbr_dl=int(b.get("mbr_dl", 0)),
                                  mbr_ul=int(b.get("mbr_ul", 0)))
                        for b in msg.get("bearers") or [{}]]
        except (ValueError, KeyError, TypeError, AttributeError):
            return self._json_response({"error": "invalid params"}, status=400)

        if sgw_addr not in self.core.path_mgr.gateways():
            return self._json_response({"error": f"unknown sgw {sgw_addr}"}, status=400)
        if self.core.bearers.by_imsi(imsi):
            return self._json_response({"error": "session exists"}, status=409)
        if any(q.qci not in self.core.dscp_mgr.QCI_DSCP for q in qos_list):
            return self._json_response({"error": "invalid qci"}, status=400)

        bearers = self.core.manager.create_session(imsi, cell_id, sgw_addr, qos_list)
        return self._json_response({"bearers": [b.to_dict() for b in bearers]})

    @route('backhaul', BASE_URL + '/session/{imsi}', methods=['DELETE'],
           requirements={'imsi': r'[0-9]+'})
    def delete_session(self, req, imsi, **kwargs):
        n = self.core.manager.delete_session(int(imsi))
        if n == 0:
            return self._json_response({"error": "no such session"}, status=404)
        return self._json_response({"ok": True, "bearers": n})

    @route('backhaul', BASE_URL + '/bearer/{teid}/request', methods=['POST'])
    def request_bearer(self, req, teid, **kwargs):
        teid = self._parse_teid(teid)
        if teid is None:
            return self._json_response({"error": "unknown teid"}, status=404)
        ok, reason = self.core.manager.request_bearer(teid)
        bearer = self.core.bearers.get(teid)
        return self._json_response({"accepted": ok, "reason": reason,
                                    "bearer": bearer.to_dict()})

    @route('backhaul', BASE_URL + '/bearer/{teid}/release', methods=['POST'])
    def release_bearer(self, req, teid, **kwargs):
        teid = self._parse_teid(teid)
        if teid is None:
            return self._json_response({"error": "unknown teid"}, status=404)
        ok, reason = self.core.manager.release_bearer(teid)
        return self._json_response({"ok": ok, "reason": reason})

    @route('backhaul', BASE_URL + '/bearers', methods=['GET'])
    def list_bearers(self, req, **kwargs):
        return self._json_response([b.to_dict() for b in self.core.bearers])

    @route('backhaul', BASE_URL + '/links', methods=['GET'])
    def list_links(self, req, **kwargs):
        return self._json_response(self.core.admission.dump_book())
