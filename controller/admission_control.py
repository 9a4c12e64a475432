'''
Author: yc && qq747339545@163.com
Date: 2025-11-25 09:50:56
LastEditTime: 2025-12-10 11:02:45
FilePath: /sdn_backhaul/controller/admission_control.py
Description: Admission 控制模块（环上 GBR 接纳 + 路径选择）

Copyright (c) 2025 by ${git_name_email}, All Rights Reserved.
'''
# controller/admission_control.py
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from bearer_models import BackhaulInvariantError, Bearer, BlockReason
from link_ledger import CeilingChange, LinkLedger, LinkLedgerBook
from path_manager import PathManager

LOG = logging.getLogger('admission_control')


class RoutingStrategy(str, Enum):
    SPO = "spo"  # shortest path only
    SPF = "spf"  # shortest path first，失败后尝试反向长路径


@dataclass
class AdmissionDecision:
    accepted: bool
    reason: str  # ok / default / non_gbr / aggregated / local / bandwidth
    adjustments: List[CeilingChange] = field(default_factory=list)
    inverted: bool = False


# 一次预留需求：(链路, 源 dpid, 目的 dpid, 速率)
Demand = Tuple[LinkLedger, int, int, int]


class AdmissionControl:
    """
    控制器侧的环链路 GBR 账本 + Admission 判断。
    所有账本修改都在 self._lock 下串行执行。
    """

    def __init__(self, path_mgr: PathManager, links: LinkLedgerBook,
                 strategy: RoutingStrategy = RoutingStrategy.SPF,
                 log_root: Optional[str] = None):
        self.path_mgr = path_mgr
        self.links = links
        self.strategy = RoutingStrategy(strategy)
        self._lock = threading.RLock()

        # --- 日志目录 ---
        self.log_root = log_root
        self.reserve_log_root = None
        self.link_snapshot_log_path = None
        if log_root:
            # 1) 每个承载的预留日志：Bearer_Reserve/<teid>.log
            self.reserve_log_root = os.path.join(log_root, "Bearer_Reserve")
            os.makedirs(self.reserve_log_root, exist_ok=True)

            # 2) 全局链路快照日志：LinkSnapshot/link_snapshot.log
            snapshot_dir = os.path.join(log_root, "LinkSnapshot")
            os.makedirs(snapshot_dir, exist_ok=True)
            self.link_snapshot_log_path = os.path.join(snapshot_dir, "link_snapshot.log")

    # ----------------------------------------------------
    # 基础写文件工具
    # ----------------------------------------------------
    def _write(self, path: str, text: str):
        with open(path, "a", encoding="utf-8") as f:
            f.write(text)

    def _log_reserve(self, bearer: Bearer, action: str, demands: List[Demand]):
        if not self.reserve_log_root:
            return
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime())
        hops = " ".join(f"s{src}->s{dst}:{rate}" for _, src, dst, rate in demands)
        msg = (
            f"{ts} [{action}] teid={bearer.teid:#x} qci={bearer.qos.qci} "
            f"down={bearer.path.down_path.name} up={bearer.path.up_path.name} "
            f"default_path={bearer.path.is_default_path} hops={hops}\n"
        )
        self._write(os.path.join(self.reserve_log_root, f"{bearer.teid}.log"), msg)

    # ----------------------------------------------------
    # 全局链路快照日志（LinkSnapshot）
    # ----------------------------------------------------
    def log_link_snapshot(self, tag: str = ""):
        """
        把当前所有链路两个方向的账本打一个快照到：
          <log_root>/LinkSnapshot/link_snapshot.log
        一般由 StatsCollector 周期性调用。
        """
        if not self.link_snapshot_log_path:
            return
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime())
        header = f"{ts} [LinkSnapshot]"
        if tag:
            header += f" tag={tag}"
        lines = [header + "\n"]
        for row in self.dump_book():
            lines.append(
                f"  s{row['sw0']}-s{row['sw1']}:{row['direction']} "
                f"cap={row['capacity_bps']} reserved={row['reserved_gbr_bps']} "
                f"allowed={row['allowed_non_gbr_bps']} guard={row['guard_bps']} "
                f"ewma_gbr={row['ewma_gbr_bps']} ewma_non_gbr={row['ewma_non_gbr_bps']}\n"
            )
        self._write(self.link_snapshot_log_path, "".join(lines))

    def dump_book(self) -> List[dict]:
        rows = []
        for link in self.links:
            rows.extend(link.snapshot())
        return rows

    # ----------------------------------------------------
    # 逐跳需求
    # ----------------------------------------------------
    def _demands(self, bearer: Bearer) -> List[Demand]:
        """
        沿当前路径从 P-GW 走到 S-GW，每一跳对应
        下行 (a->b, gbr_dl) 和上行 (b->a, gbr_ul) 两个需求。
        半双工链路两个方向共用 FWD，需要合并成一个需求。
        """
        demands: List[Demand] = []
        for src, dst in self.path_mgr.downlink_hops(bearer.path):
            link = self.links.get(src, dst)
            dl, ul = bearer.gbr_dl, bearer.gbr_ul
            if not link.full_duplex:
                if dl + ul:
                    demands.append((link, src, dst, dl + ul))
                continue
            if dl:
                demands.append((link, src, dst, dl))
            if ul:
                demands.append((link, dst, src, ul))
        return demands

    def has_gbr_bitrate(self, bearer: Bearer) -> bool:
        return all(link.has_gbr_capacity(src, dst, rate)
                   for link, src, dst, rate in self._demands(bearer))

    def _reserve(self, bearer: Bearer) -> List[CeilingChange]:
        demands = self._demands(bearer)
        changes: List[CeilingChange] = []
        for link, src, dst, rate in demands:
            ok, adj = link.reserve_gbr(src, dst, rate)
            if not ok:
                raise BackhaulInvariantError(
                    f"reserve failed on s{src}->s{dst} for teid={bearer.teid:#x} "
                    "after capacity check passed")
            changes.extend(adj)
        bearer.is_reserved = True
        self._log_reserve(bearer, "Reserve", demands)
        return changes

    # ----------------------------------------------------
    # Admission 判断
    # ----------------------------------------------------
    def _exempt_reason(self, bearer: Bearer) -> Optional[str]:
        if bearer.is_default:
            return "default"
        if bearer.is_aggregated:
            return "aggregated"
        if not bearer.is_gbr or not (bearer.gbr_dl or bearer.gbr_ul):
            return "non_gbr"
        if bearer.path.is_local():
            return "local"
        return None

    def bearer_request(self, bearer: Bearer) -> AdmissionDecision:
        """
        每次请求都从最短路径开始：
          1) 重新计算最短路径（丢弃之前的反转）
          2) 默认承载 / Non-GBR / 聚合 / 本地路径 直接接纳
          3) 最短路径逐跳检查，够就逐跳预留
          4) SPF 策略下反转到长路径再试一次
          5) 都不够则 BANDWIDTH 阻塞
        """
        with self._lock:
            if bearer.is_reserved:
                raise BackhaulInvariantError(
                    f"teid={bearer.teid:#x} requested while still holding a reservation")
            self.path_mgr.reset_path(bearer.path)

            reason = self._exempt_reason(bearer)
            if reason:
                bearer.clear_block()
                LOG.debug("[admission] teid=%#x accepted without reservation (%s)",
                          bearer.teid, reason)
                return AdmissionDecision(True, reason)

            if self.has_gbr_bitrate(bearer):
                adj = self._reserve(bearer)
                bearer.clear_block()
                LOG.info("[admission] teid=%#x accepted on shortest path %s",
                         bearer.teid, bearer.path.down_path.name)
                return AdmissionDecision(True, "ok", adj)

            if self.strategy == RoutingStrategy.SPF:
                bearer.path.invert_paths()
                if self.has_gbr_bitrate(bearer):
                    adj = self._reserve(bearer)
                    bearer.clear_block()
                    LOG.info("[admission] teid=%#x accepted on inverted path %s",
                             bearer.teid, bearer.path.down_path.name)
                    return AdmissionDecision(True, "ok", adj, inverted=True)

            bearer.set_blocked(BlockReason.BANDWIDTH)
            LOG.warning("[admission] teid=%#x blocked: no GBR bandwidth (dl=%d ul=%d strategy=%s)",
                        bearer.teid, bearer.gbr_dl, bearer.gbr_ul, self.strategy.value)
            return AdmissionDecision(False, "bandwidth")

    def bearer_release(self, bearer: Bearer) -> List[CeilingChange]:
        """沿当前已预留的路径逐跳释放；没有预留的承载什么也不做"""
        with self._lock:
            if not bearer.is_reserved:
                return []
            demands = self._demands(bearer)
            changes: List[CeilingChange] = []
            for link, src, dst, rate in demands:
                ok, adj = link.release_gbr(src, dst, rate)
                if not ok:
                    raise BackhaulInvariantError(
                        f"release failed on s{src}->s{dst} for teid={bearer.teid:#x}")
                changes.extend(adj)
            bearer.is_reserved = False
            self._log_reserve(bearer, "Release", demands)
            LOG.info("[admission] teid=%#x released path %s",
                     bearer.teid, bearer.path.down_path.name)
            return changes

    def path_use_ratio(self, bearer: Bearer) -> float:
        """路径上 EWMA 吞吐最大值 / 路径上最小链路容量"""
        hops = self.path_mgr.downlink_hops(bearer.path)
        if not hops:
            return 0.0
        max_thp = 0.0
        min_cap = None
        for src, dst in hops:
            link = self.links.get(src, dst)
            max_thp = max(max_thp, link.ewma_throughput(src, dst),
                          link.ewma_throughput(dst, src))
            min_cap = link.capacity_bps if min_cap is None else min(min_cap, link.capacity_bps)
        return max_thp / min_cap

