'''
Author: yc && qq747339545@163.com
Date: 2025-12-02 14:12:08
LastEditTime: 2025-12-09 17:40:51
FilePath: /sdn_backhaul/controller/link_ledger.py
Description: 环链路带宽账本（GBR 预留 + Non-GBR 动态上限）

Copyright (c) 2025 by ${git_name_email}, All Rights Reserved.
'''
# controller/link_ledger.py
import logging
import threading
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Iterator, List, Optional, Tuple

from bearer_models import BackhaulInvariantError

LOG = logging.getLogger('link_ledger')


class LinkDirection(IntEnum):
    FWD = 0  # sw0 -> sw1
    BWD = 1  # sw1 -> sw0


@dataclass
class CeilingChange:
    """Non-GBR 上限变化通知，由 FlowInstaller 转成 meter 修改"""
    sw0: int
    sw1: int
    direction: LinkDirection
    allowed_bps: int
    full_duplex: bool = True


@dataclass
class LinkDirectionState:
    reserved_gbr: int = 0
    allowed_non_gbr: int = 0

    # 统计：累计发送字节 + EWMA 吞吐
    tx_gbr_bytes: int = 0
    tx_non_gbr_bytes: int = 0
    last_gbr_bytes: int = 0
    last_non_gbr_bytes: int = 0
    ewma_gbr_bps: float = 0.0
    ewma_non_gbr_bps: float = 0.0


class LinkLedger:
    """
    一条环链路（sw0 <-> sw1）的带宽账本。

    每个方向维护：
      reserved_gbr    已承诺的 GBR 带宽
      allowed_non_gbr 当前 Non-GBR 限速上限（meter 速率）

    不变式：
      reserved_gbr <= quota * capacity
      floor <= allowed_non_gbr <= ceiling
      capacity - reserved_gbr - allowed_non_gbr >= safeguard

    allowed_non_gbr 只取 {ceiling - k * step} 上的值（以及 floor），
    因此它是 reserved_gbr 的确定函数，预留后立刻释放可以精确还原。
    """

    def __init__(self, sw0: int, sw1: int, capacity_bps: int,
                 gbr_quota: float = 0.35,
                 safeguard_bps: int = 5_000_000,
                 adjust_step_bps: int = 5_000_000,
                 full_duplex: bool = True,
                 ewma_alpha: float = 0.25):
        if sw0 == sw1:
            raise ValueError("link endpoints must differ")
        if capacity_bps <= 0:
            raise ValueError(f"invalid link capacity {capacity_bps}")
        if not 0 < gbr_quota <= 0.5:
            raise ValueError(f"GBR quota must be in (0, 0.5], got {gbr_quota}")
        if adjust_step_bps <= 0 or safeguard_bps < 0:
            raise ValueError("invalid safeguard / adjustment step")
        if not 0 < ewma_alpha <= 1:
            raise ValueError(f"EWMA alpha must be in (0, 1], got {ewma_alpha}")

        self.sw0 = sw0
        self.sw1 = sw1
        self.capacity_bps = int(capacity_bps)
        self.gbr_quota = gbr_quota
        self.safeguard_bps = int(safeguard_bps)
        self.adjust_step_bps = int(adjust_step_bps)
        self.full_duplex = full_duplex
        self.ewma_alpha = ewma_alpha

        self.max_gbr_bps = int(round(self.capacity_bps * gbr_quota))
        self.ceiling_bps = self.capacity_bps - self.safeguard_bps
        self.floor_bps = self.capacity_bps - self.max_gbr_bps - self.safeguard_bps
        if self.floor_bps < 0:
            raise ValueError("safeguard and GBR quota exceed link capacity")

        self._dirs = [LinkDirectionState(allowed_non_gbr=self.ceiling_bps),
                      LinkDirectionState(allowed_non_gbr=self.ceiling_bps)]
        self._lock = threading.Lock()

    @property
    def key(self) -> Tuple[int, int]:
        return (min(self.sw0, self.sw1), max(self.sw0, self.sw1))

    def __repr__(self):
        return f"LinkLedger(s{self.sw0}<->s{self.sw1}, cap={self.capacity_bps})"

    # ----------------------------------------------------
    # 方向 / 状态查询
    # ----------------------------------------------------
    def get_direction(self, src: int, dst: int) -> LinkDirection:
        if (src, dst) not in ((self.sw0, self.sw1), (self.sw1, self.sw0)):
            raise ValueError(f"s{src}->s{dst} is not a traversal of {self!r}")
        # 半双工链路只用 FWD 做预留
        if self.full_duplex and src == self.sw1:
            return LinkDirection.BWD
        return LinkDirection.FWD

    def state(self, direction: LinkDirection) -> LinkDirectionState:
        return self._dirs[direction]

    def reserved_gbr(self, src: int, dst: int) -> int:
        return self._dirs[self.get_direction(src, dst)].reserved_gbr

    def allowed_non_gbr(self, src: int, dst: int) -> int:
        return self._dirs[self.get_direction(src, dst)].allowed_non_gbr

    def guard_band(self, direction: LinkDirection) -> int:
        st = self._dirs[direction]
        return self.capacity_bps - st.reserved_gbr - st.allowed_non_gbr

    # ----------------------------------------------------
    # GBR 预留 / 释放
    # ----------------------------------------------------
    def has_gbr_capacity(self, src: int, dst: int, bit_rate: int) -> bool:
        st = self._dirs[self.get_direction(src, dst)]
        return st.reserved_gbr + bit_rate <= self.max_gbr_bps

    def reserve_gbr(self, src: int, dst: int, bit_rate: int) -> Tuple[bool, List[CeilingChange]]:
        """
        预留 GBR 带宽，随后按 step 逐步压低 allowed_non_gbr 直到保护带恢复。
        返回 (ok, 每一步上限变化)；容量不足时返回 (False, []) 且不修改账本。
        """
        if bit_rate < 0:
            raise ValueError(f"negative bit rate {bit_rate}")
        with self._lock:
            direction = self.get_direction(src, dst)
            st = self._dirs[direction]
            if st.reserved_gbr + bit_rate > self.max_gbr_bps:
                LOG.warning("[ledger] s%s->s%s no GBR capacity: reserved=%d req=%d max=%d",
                            src, dst, st.reserved_gbr, bit_rate, self.max_gbr_bps)
                return False, []

            st.reserved_gbr += bit_rate
            changes = []
            while (self.guard_band(direction) < self.safeguard_bps
                   and st.allowed_non_gbr > self.floor_bps):
                st.allowed_non_gbr = max(self.floor_bps,
                                         st.allowed_non_gbr - self.adjust_step_bps)
                changes.append(self._change(direction))

            LOG.debug("[ledger] reserve s%s->s%s %s +%d reserved=%d allowed=%d",
                      src, dst, direction.name, bit_rate,
                      st.reserved_gbr, st.allowed_non_gbr)
            return True, changes

    def release_gbr(self, src: int, dst: int, bit_rate: int) -> Tuple[bool, List[CeilingChange]]:
        """
        释放 GBR 带宽，随后按 step 逐步抬高 allowed_non_gbr，
        每一步都要保证保护带仍不小于 safeguard。
        释放量超过已预留量时返回 (False, [])，不修改账本。
        """
        if bit_rate < 0:
            raise ValueError(f"negative bit rate {bit_rate}")
        with self._lock:
            direction = self.get_direction(src, dst)
            st = self._dirs[direction]
            if st.reserved_gbr < bit_rate:
                LOG.warning("[ledger] s%s->s%s release underflow: reserved=%d req=%d",
                            src, dst, st.reserved_gbr, bit_rate)
                return False, []

            st.reserved_gbr -= bit_rate
            changes = []
            while True:
                nxt = self._next_step_up(st.allowed_non_gbr)
                if nxt is None:
                    break
                if self.capacity_bps - st.reserved_gbr - nxt < self.safeguard_bps:
                    break
                st.allowed_non_gbr = nxt
                changes.append(self._change(direction))

            LOG.debug("[ledger] release s%s->s%s %s -%d reserved=%d allowed=%d",
                      src, dst, direction.name, bit_rate,
                      st.reserved_gbr, st.allowed_non_gbr)
            return True, changes

    def _next_step_up(self, allowed: int) -> Optional[int]:
        if allowed >= self.ceiling_bps:
            return None
        gap = self.ceiling_bps - allowed
        if gap % self.adjust_step_bps == 0:
            return allowed + self.adjust_step_bps
        # 从不在步进网格上的 floor 出发：先回到网格
        return self.ceiling_bps - (gap // self.adjust_step_bps) * self.adjust_step_bps

    def _change(self, direction: LinkDirection) -> CeilingChange:
        return CeilingChange(self.sw0, self.sw1, direction,
                             self._dirs[direction].allowed_non_gbr,
                             full_duplex=self.full_duplex)

    # ----------------------------------------------------
    # 吞吐统计
    # ----------------------------------------------------
    def add_tx_bytes(self, src: int, dst: int, is_gbr: bool, nbytes: int):
        with self._lock:
            st = self._dirs[self.get_direction(src, dst)]
            if is_gbr:
                st.tx_gbr_bytes += nbytes
            else:
                st.tx_non_gbr_bytes += nbytes

    def update_statistics(self, elapsed_secs: float):
        """按上次更新以来的发送字节刷新 EWMA 吞吐"""
        if elapsed_secs <= 0:
            return
        alpha = self.ewma_alpha
        with self._lock:
            for st in self._dirs:
                gbr_rate = (st.tx_gbr_bytes - st.last_gbr_bytes) * 8 / elapsed_secs
                non_gbr_rate = (st.tx_non_gbr_bytes - st.last_non_gbr_bytes) * 8 / elapsed_secs
                st.ewma_gbr_bps = alpha * gbr_rate + (1 - alpha) * st.ewma_gbr_bps
                st.ewma_non_gbr_bps = alpha * non_gbr_rate + (1 - alpha) * st.ewma_non_gbr_bps
                st.last_gbr_bytes = st.tx_gbr_bytes
                st.last_non_gbr_bytes = st.tx_non_gbr_bytes

    def ewma_throughput(self, src: int, dst: int) -> float:
        st = self._dirs[self.get_direction(src, dst)]
        return st.ewma_gbr_bps + st.ewma_non_gbr_bps

    def snapshot(self) -> List[dict]:
        rows = []
        for direction in LinkDirection:
            st = self._dirs[direction]
            rows.append({
                "sw0": self.sw0,
                "sw1": self.sw1,
                "direction": direction.name,
                "capacity_bps": self.capacity_bps,
                "reserved_gbr_bps": st.reserved_gbr,
                "allowed_non_gbr_bps": st.allowed_non_gbr,
                "guard_bps": self.guard_band(direction),
                "ewma_gbr_bps": int(st.ewma_gbr_bps),
                "ewma_non_gbr_bps": int(st.ewma_non_gbr_bps),
            })
        return rows


class LinkLedgerBook:
    """所有环链路账本的注册表，按无序 dpid 对索引"""

    def __init__(self):
        self._links: Dict[Tuple[int, int], LinkLedger] = {}

    def add(self, ledger: LinkLedger):
        if ledger.key in self._links:
            raise BackhaulInvariantError(f"link s{ledger.sw0}<->s{ledger.sw1} registered twice")
        self._links[ledger.key] = ledger
        LOG.info("[ledger] new link s%d<->s%d cap=%d duplex=%s",
                 ledger.sw0, ledger.sw1, ledger.capacity_bps,
                 "full" if ledger.full_duplex else "half")

    def get(self, dpid_a: int, dpid_b: int) -> LinkLedger:
        key = (min(dpid_a, dpid_b), max(dpid_a, dpid_b))
        try:
            return self._links[key]
        except KeyError:
            raise BackhaulInvariantError(f"no link between s{dpid_a} and s{dpid_b}") from None

    def __iter__(self) -> Iterator[LinkLedger]:
        return iter(sorted(self._links.values(), key=lambda l: l.key))

    def __len__(self):
        return len(self._links)
