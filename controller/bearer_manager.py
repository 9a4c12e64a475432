'''
Author: yc && qq747339545@163.com
Date: 2025-12-03 09:18:44
LastEditTime: 2025-12-10 16:52:20
FilePath: /sdn_backhaul/controller/bearer_manager.py
Description: 承载生命周期管理（会话建立 / 承载请求释放 / 规则过期自愈）

Copyright (c) 2025 by ${git_name_email}, All Rights Reserved.
'''
# controller/bearer_manager.py
import logging
import threading
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

from admission_control import AdmissionControl
from backhaul_logger import log_with_extra
from bearer_models import (DEDICATED_BEARER_PRIORITY, DEFAULT_BEARER_PRIORITY,
                           BackhaulInvariantError, Bearer, BearerQos)
from dscp_manager import DSCPManager
from flow_installer import FlowInstaller
from path_manager import PathManager

TEID_FIRST = 0x100
TEID_LAST = 0xFEFFFFFF


class AggregationMode(str, Enum):
    OFF = "off"
    ON = "on"
    AUTO = "auto"


class TeidAllocator:
    """顺序分配 TEID，范围 0x100 ~ 0xFEFFFFFF"""

    def __init__(self, first: int = TEID_FIRST, last: int = TEID_LAST):
        self._next = first
        self._last = last
        self._lock = threading.Lock()

    def alloc(self) -> int:
        with self._lock:
            if self._next > self._last:
                raise BackhaulInvariantError("TEID space exhausted")
            teid = self._next
            self._next += 1
            return teid


class BearerRepository:
    """TEID -> Bearer 注册表"""

    def __init__(self):
        self._bearers: Dict[int, Bearer] = {}

    def add(self, bearer: Bearer):
        if bearer.teid in self._bearers:
            raise BackhaulInvariantError(f"TEID {bearer.teid:#x} registered twice")
        self._bearers[bearer.teid] = bearer

    def get(self, teid: int) -> Bearer:
        try:
            return self._bearers[teid]
        except KeyError:
            raise BackhaulInvariantError(f"unknown TEID {teid:#x}") from None

    def find(self, teid: int) -> Optional[Bearer]:
        return self._bearers.get(teid)

    def remove(self, teid: int) -> Bearer:
        return self._bearers.pop(teid)

    def by_imsi(self, imsi: int) -> List[Bearer]:
        return [b for b in self._bearers.values() if b.imsi == imsi]

    def __iter__(self) -> Iterator[Bearer]:
        return iter(list(self._bearers.values()))

    def __len__(self):
        return len(self._bearers)


class BearerManager:
    """
    承载状态机：
      INACTIVE --接纳--> ACTIVE(待安装) --规则下发成功--> INSTALLED
      INSTALLED --释放--> INACTIVE
      INSTALLED --规则意外过期--> ACTIVE(待安装) --> INSTALLED
    每次（重新）安装前都先提升 priority，新规则总能覆盖旧规则，
    过期通知是否陈旧只需比较 priority。
    """

    def __init__(self, repo: BearerRepository, admission: AdmissionControl,
                 installer: FlowInstaller, path_mgr: PathManager,
                 dscp_mgr: DSCPManager, pgw_addr: str,
                 teids: Optional[TeidAllocator] = None,
                 dedicated_timeout: int = 15,
                 aggregation: AggregationMode = AggregationMode.OFF,
                 gbr_threshold: float = 0.5,
                 non_gbr_threshold: float = 0.5):
        self.repo = repo
        self.admission = admission
        self.installer = installer
        self.path_mgr = path_mgr
        self.dscp_mgr = dscp_mgr
        self.pgw_addr = pgw_addr
        self.teids = teids or TeidAllocator()
        self.dedicated_timeout = dedicated_timeout
        self.aggregation = AggregationMode(aggregation)
        self.gbr_threshold = gbr_threshold
        self.non_gbr_threshold = non_gbr_threshold
        self.logger = logging.getLogger('bearer_manager')
        self._lock = threading.RLock()

    # ----------------------------------------------------
    # 会话
    # ----------------------------------------------------
    def create_session(self, imsi: int, cell_id: int, sgw_addr: str,
                       qos_list: List[BearerQos]) -> List[Bearer]:
        """第一个 QoS 是默认承载（立即接纳并安装），其余是专用承载（初始 inactive）"""
        if not qos_list:
            raise ValueError("a session needs at least the default bearer")
        with self._lock:
            if self.repo.by_imsi(imsi):
                raise BackhaulInvariantError(f"session for imsi={imsi} already exists")

            bearers = []
            for i, qos in enumerate(qos_list):
                bearer = Bearer(
                    teid=self.teids.alloc(),
                    imsi=imsi,
                    cell_id=cell_id,
                    qos=qos,
                    pgw_addr=self.pgw_addr,
                    sgw_addr=sgw_addr,
                    path=self.path_mgr.new_ring_path(self.pgw_addr, sgw_addr),
                    is_default=(i == 0),
                )
                if bearer.is_default:
                    bearer.priority = DEFAULT_BEARER_PRIORITY
                    bearer.timeout = 0
                else:
                    bearer.priority = DEDICATED_BEARER_PRIORITY
                    bearer.timeout = self.dedicated_timeout
                    bearer.is_aggregated = self.aggregation == AggregationMode.ON
                bearer.dscp = self.dscp_mgr.dscp_for_qci(qos.qci) if bearer.is_gbr else 0
                bearer.queue_id = self.dscp_mgr.queue_for_dscp(bearer.dscp)
                self.repo.add(bearer)
                bearers.append(bearer)

            default = bearers[0]
            decision = self.admission.bearer_request(default)
            if not decision.accepted:
                self._discard_session(bearers)
                raise BackhaulInvariantError(f"default bearer teid={default.teid:#x} not admitted")
            default.activate()
            if not self._install(default):
                # 撤掉已下发的那一半，会话可以重建
                self.installer.remove_bearer(default)
                default.deactivate()
                self._discard_session(bearers)
                raise BackhaulInvariantError(f"default bearer teid={default.teid:#x} not installed")

            log_with_extra(self.logger, logging.INFO, "[bearer] session created",
                           imsi=imsi, cell_id=cell_id, sgw=sgw_addr,
                           teids=[b.teid for b in bearers])
            return bearers

    def delete_session(self, imsi: int) -> int:
        with self._lock:
            bearers = self.repo.by_imsi(imsi)
            for bearer in bearers:
                if bearer.is_default:
                    if bearer.is_installed and not self.installer.remove_bearer(bearer):
                        self.logger.warning("[bearer] default teid=%#x rules not withdrawn",
                                            bearer.teid)
                    bearer.deactivate()
                else:
                    self.release_bearer(bearer.teid)
                self.repo.remove(bearer.teid)
            log_with_extra(self.logger, logging.INFO, "[bearer] session deleted",
                           imsi=imsi, bearers=len(bearers))
            return len(bearers)

    # ----------------------------------------------------
    # 承载请求 / 释放
    # ----------------------------------------------------
    def request_bearer(self, teid: int) -> Tuple[bool, str]:
        with self._lock:
            bearer = self.repo.get(teid)

            if bearer.is_default:
                if not (bearer.is_active and bearer.is_installed):
                    raise BackhaulInvariantError(
                        f"default bearer teid={teid:#x} is not active and installed")
                return True, "default"

            if bearer.is_active:
                if bearer.is_installed:
                    return True, "duplicate"
                # 上次部分下发失败，只重装不重新接纳
                ok = self._install(bearer)
                return ok, "reinstalled" if ok else "install_failed"

            if self.aggregation == AggregationMode.AUTO:
                bearer.is_aggregated = self._should_aggregate(bearer)

            decision = self.admission.bearer_request(bearer)
            if not decision.accepted:
                log_with_extra(self.logger, logging.WARNING, "[bearer] request blocked",
                               teid=teid, reason=decision.reason,
                               block_reason=bearer.block_reason.name)
                return False, decision.reason

            self.installer.apply_adjustments(decision.adjustments)
            bearer.activate()
            if not self._install(bearer):
                log_with_extra(self.logger, logging.WARNING, "[bearer] partial install",
                               teid=teid, priority=bearer.priority)
                return False, "install_failed"

            log_with_extra(self.logger, logging.INFO, "[bearer] request accepted",
                           teid=teid, reason=decision.reason,
                           down=bearer.path.down_path.name,
                           inverted=decision.inverted, priority=bearer.priority)
            return True, "ok"

    def release_bearer(self, teid: int) -> Tuple[bool, str]:
        with self._lock:
            bearer = self.repo.get(teid)
            if bearer.is_default:
                return True, "default"
            if not bearer.is_active:
                return True, "duplicate"

            self.installer.apply_adjustments(self.admission.bearer_release(bearer))
            withdrawn = True
            if not bearer.is_aggregated:
                withdrawn = self.installer.remove_bearer(bearer)
            bearer.deactivate()

            if not withdrawn:
                self.logger.warning("[bearer] teid=%#x released but rules not withdrawn", teid)
                return False, "withdraw_failed"
            log_with_extra(self.logger, logging.INFO, "[bearer] released", teid=teid)
            return True, "ok"

    # ----------------------------------------------------
    # 交换机 FlowRemoved
    # ----------------------------------------------------
    def on_rule_expired(self, teid: int, priority: int) -> str:
        """
        按顺序判断：
          (a) 承载已 inactive -> 正常过期，忽略
          (b) 当前 priority 更高 -> 旧规则过期，忽略
          (c) priority 相等 -> 流量仍需要，提升 priority 重装
        过期 priority 比当前还高说明 priority 回退过，属于程序错误。
        """
        with self._lock:
            bearer = self.repo.get(teid)
            if not bearer.is_active:
                self.logger.debug("[bearer] teid=%#x expired while inactive", teid)
                return "inactive"
            if bearer.priority > priority:
                self.logger.debug("[bearer] teid=%#x stale expiry prio=%d current=%d",
                                  teid, priority, bearer.priority)
                return "stale"
            if bearer.priority < priority:
                raise BackhaulInvariantError(
                    f"teid={teid:#x} expired priority {priority} above current {bearer.priority}")

            bearer.is_installed = False
            ok = self._install(bearer)
            log_with_extra(self.logger, logging.WARNING, "[bearer] unexpected expiry",
                           teid=teid, expired_priority=priority,
                           new_priority=bearer.priority, reinstalled=ok)
            return "reinstalled" if ok else "install_failed"

    # ----------------------------------------------------
    # 交换机重连
    # ----------------------------------------------------
    def on_switch_connected(self, dpid: int) -> List[int]:
        """交换机被清空后，把入口在它上面的活跃承载重装一遍，返回重装的 TEID"""
        reinstalled = []
        with self._lock:
            for bearer in self.repo:
                if not bearer.is_active or bearer.is_aggregated:
                    continue
                pgw_dpid = self.path_mgr.get_dpid(bearer.path.pgw_idx)
                sgw_dpid = self.path_mgr.get_dpid(bearer.path.sgw_idx)
                if dpid not in (pgw_dpid, sgw_dpid):
                    continue
                if dpid == pgw_dpid:
                    bearer.dl_meter_installed = False
                if dpid == sgw_dpid:
                    bearer.ul_meter_installed = False
                bearer.is_installed = False
                if not self._install(bearer):
                    self.logger.warning("[bearer] teid=%#x not restored on s%s", bearer.teid, dpid)
                reinstalled.append(bearer.teid)
        if reinstalled:
            log_with_extra(self.logger, logging.INFO, "[bearer] switch restored",
                           dpid=dpid, teids=reinstalled)
        return reinstalled

    # ----------------------------------------------------
    # 内部
    # ----------------------------------------------------
    def _install(self, bearer: Bearer) -> bool:
        bearer.increase_priority()
        if bearer.is_aggregated:
            # 流量走默认承载隧道，不需要单独规则
            bearer.mark_installed(True)
            return True
        ok = self.installer.install_bearer(bearer)
        bearer.mark_installed(ok)
        return ok

    def _discard_session(self, bearers: List[Bearer]):
        for bearer in bearers:
            self.repo.remove(bearer.teid)

    def _should_aggregate(self, bearer: Bearer) -> bool:
        self.path_mgr.reset_path(bearer.path)
        ratio = self.admission.path_use_ratio(bearer)
        threshold = self.gbr_threshold if bearer.is_gbr else self.non_gbr_threshold
        return ratio <= threshold
