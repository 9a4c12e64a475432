'''
Author: yc && qq747339545@163.com
Date: 2025-11-25 09:51:25
LastEditTime: 2025-12-09 20:11:38
FilePath: /sdn_backhaul/controller/stats_collector.py
Description:   Stats 收集模块

Copyright (c) 2025 by ${git_name_email}, All Rights Reserved.
'''
# controller/stats_collector.py
import threading
import time
from typing import Dict, Optional, Tuple

from admission_control import AdmissionControl
from bearer_manager import BearerRepository
from flow_installer import BEARER_TABLE
from link_ledger import LinkLedgerBook
from path_manager import PathManager


class StatsCollector:
    """
    周期性向交换机请求 FlowStats，把每条承载规则（cookie = TEID）
    新增的字节数记到它当前路径经过的每条链路上，再刷新链路 EWMA 吞吐。
    需要提供：
      - datapaths: dpid -> datapath
      - bearers:   TEID -> Bearer
    """

    def __init__(self, datapaths: Dict[int, object], bearers: BearerRepository,
                 path_mgr: PathManager, links: LinkLedgerBook,
                 admission: AdmissionControl, logger,
                 interval: float = 1.0, snapshot_interval: float = 3.0):
        self.datapaths = datapaths
        self.bearers = bearers
        self.path_mgr = path_mgr
        self.links = links
        self.admission = admission
        self.logger = logger
        self.interval = interval
        self.snapshot_interval = snapshot_interval

        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._running = False

        # (dpid, teid, priority) -> 上次看到的 byte_count
        # 重装后新旧两条规则 cookie 相同，靠 priority 区分
        self.rule_bytes: Dict[Tuple[int, int, int], int] = {}
        self.last_update: Optional[float] = None
        self.last_snapshot = 0.0

    def start(self):
        self._running = True
        self._thread.start()

    def stop(self):
        self._running = False

    def _loop(self):
        while self._running:
            try:
                self.request_all()
                self.update_links()
            except Exception:
                self.logger.exception("[stats] loop error")
            time.sleep(self.interval)

    def request_all(self):
        for dp in list(self.datapaths.values()):
            self._req_flow(dp)

    def _req_flow(self, dp):
        ofp = dp.ofproto
        parser = dp.ofproto_parser
        dp.send_msg(parser.OFPFlowStatsRequest(dp, 0, BEARER_TABLE,
                                               ofp.OFPP_ANY, ofp.OFPG_ANY,
                                               0, 0, parser.OFPMatch()))

    # ----------------------------------------------------
    # FlowStats -> 链路字节
    # ----------------------------------------------------
    def on_flow_stats(self, dpid: int, stats, now: Optional[float] = None):
        now = time.time() if now is None else now
        for st in stats:
            self.logger.debug(
                "[FlowStatsRaw] dpid=%s table=%d cookie=%#x pri=%d n_pkts=%d n_bytes=%d",
                dpid, st.table_id, st.cookie, st.priority,
                st.packet_count, st.byte_count
            )
            # cookie 0 是系统规则
            if st.table_id != BEARER_TABLE or st.cookie == 0:
                continue
            bearer = self.bearers.find(st.cookie)
            if bearer is None:
                self._forget(st.cookie)
                continue
            if bearer.path.is_local():
                continue

            key = (dpid, bearer.teid, st.priority)
            prev = self.rule_bytes.get(key, 0)
            # 规则重装后计数器从 0 开始
            delta = st.byte_count - prev if st.byte_count >= prev else st.byte_count
            self.rule_bytes[key] = st.byte_count
            if delta <= 0:
                continue

            if dpid == self.path_mgr.get_dpid(bearer.path.pgw_idx):
                hops = self.path_mgr.downlink_hops(bearer.path)
            elif dpid == self.path_mgr.get_dpid(bearer.path.sgw_idx):
                hops = self.path_mgr.uplink_hops(bearer.path)
            else:
                continue
            for src, dst in hops:
                self.links.get(src, dst).add_tx_bytes(src, dst, bearer.is_gbr, delta)

        if now - self.last_snapshot > self.snapshot_interval:
            self._print_link_book()
            self.last_snapshot = now

    def _forget(self, teid: int):
        for key in [k for k in self.rule_bytes if k[1] == teid]:
            del self.rule_bytes[key]

    def _prune(self):
        """会话删除后交换机上已无规则，对应计数不会再出现"""
        for teid in {k[1] for k in self.rule_bytes}:
            if self.bearers.find(teid) is None:
                self._forget(teid)

    def update_links(self, now: Optional[float] = None):
        """把累计字节折算成速率，刷新所有链路的 EWMA"""
        now = time.time() if now is None else now
        if self.last_update is None:
            self.last_update = now
            return
        elapsed = now - self.last_update
        if elapsed <= 0:
            return
        for link in self.links:
            link.update_statistics(elapsed)
        self._prune()
        self.last_update = now

    def _print_link_book(self):
        """写全局链路快照日志"""
        try:
            self.admission.log_link_snapshot(tag="periodic")
        except OSError:
            self.logger.exception("log_link_snapshot failed")
