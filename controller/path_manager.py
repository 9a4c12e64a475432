'''
Author: yc && qq747339545@163.com
Date: 2025-11-25 09:50:49
LastEditTime: 2025-12-08 10:21:37
FilePath: /sdn_backhaul/controller/path_manager.py
Description: 环形拓扑路径选择

Copyright (c) 2025 by ${git_name_email}, All Rights Reserved.
'''
# controller/path_manager.py
from typing import Dict, List, Tuple

from bearer_models import BackhaulInvariantError, RingPath, RoutingPath


def _check_ring(ring_size: int, *indices: int):
    if ring_size < 3:
        raise ValueError(f"ring size must be >= 3, got {ring_size}")
    for idx in indices:
        if not 0 <= idx < ring_size:
            raise ValueError(f"switch index {idx} out of range for ring of {ring_size}")


def shortest_direction(src: int, dst: int, ring_size: int) -> RoutingPath:
    """
    src == dst 返回 LOCAL；否则顺时针距离 d <= N/2 走 CLOCK，
    正好半圈时也选 CLOCK。
    """
    _check_ring(ring_size, src, dst)
    if src == dst:
        return RoutingPath.LOCAL
    d = (dst - src + ring_size) % ring_size
    if d <= ring_size / 2:
        return RoutingPath.CLOCK
    return RoutingPath.COUNTER


def next_hop(idx: int, direction: RoutingPath, ring_size: int) -> int:
    _check_ring(ring_size, idx)
    if direction == RoutingPath.CLOCK:
        return (idx + 1) % ring_size
    if direction == RoutingPath.COUNTER:
        return (idx - 1 + ring_size) % ring_size
    raise ValueError("LOCAL path has no next hop")


def invert(direction: RoutingPath) -> RoutingPath:
    return RoutingPath(direction).inverted()


def hop_count(src: int, dst: int, direction: RoutingPath, ring_size: int) -> int:
    _check_ring(ring_size, src, dst)
    if direction == RoutingPath.LOCAL:
        if src != dst:
            raise ValueError("LOCAL direction between different switches")
        return 0
    if direction == RoutingPath.CLOCK:
        return (dst - src + ring_size) % ring_size
    return (src - dst + ring_size) % ring_size


def walk(src: int, dst: int, direction: RoutingPath, ring_size: int) -> List[Tuple[int, int]]:
    """从 src 沿 direction 走到 dst，返回每一跳 (idx, next_idx)"""
    hops = []
    count = hop_count(src, dst, direction, ring_size)
    cur = src
    for _ in range(count):
        nxt = next_hop(cur, direction, ring_size)
        hops.append((cur, nxt))
        cur = nxt
    return hops


class PathManager:
    """
    环形拓扑的路径管理：
    - switches: 按顺时针排列的 dpid 列表，下标即环上的位置
    - 维护 网关/锚点 IP -> 环交换机下标 的映射
    """

    def __init__(self, switches: List[int]):
        _check_ring(len(switches))
        if len(set(switches)) != len(switches):
            raise ValueError(f"duplicate datapath ids in ring: {switches}")
        self.switches: List[int] = list(switches)
        self._dpid_index: Dict[int, int] = {dpid: i for i, dpid in enumerate(switches)}
        self._addr_index: Dict[str, int] = {}

    @property
    def ring_size(self) -> int:
        return len(self.switches)

    def register_gateway(self, addr: str, idx: int):
        _check_ring(self.ring_size, idx)
        if addr in self._addr_index:
            raise BackhaulInvariantError(f"gateway address {addr} registered twice")
        self._addr_index[addr] = idx

    def gateways(self) -> Dict[str, int]:
        return dict(self._addr_index)

    def get_switch_index(self, addr: str) -> int:
        try:
            return self._addr_index[addr]
        except KeyError:
            raise BackhaulInvariantError(f"unknown gateway address {addr}") from None

    def get_dpid(self, idx: int) -> int:
        _check_ring(self.ring_size, idx)
        return self.switches[idx]

    def get_index(self, dpid: int) -> int:
        return self._dpid_index[dpid]

    def new_ring_path(self, pgw_addr: str, sgw_addr: str) -> RingPath:
        path = RingPath(pgw_idx=self.get_switch_index(pgw_addr),
                        sgw_idx=self.get_switch_index(sgw_addr))
        self.reset_path(path)
        return path

    def reset_path(self, path: RingPath):
        """丢弃之前的反转结果，重新取最短路径"""
        down = shortest_direction(path.pgw_idx, path.sgw_idx, self.ring_size)
        path.set_default_paths(down, invert(down))

    def downlink_hops(self, path: RingPath) -> List[Tuple[int, int]]:
        """下行经过的链路，按 (源 dpid, 目的 dpid) 排列"""
        return [(self.switches[a], self.switches[b])
                for a, b in walk(path.pgw_idx, path.sgw_idx, path.down_path, self.ring_size)]

    def uplink_hops(self, path: RingPath) -> List[Tuple[int, int]]:
        return [(self.switches[a], self.switches[b])
                for a, b in walk(path.sgw_idx, path.pgw_idx, path.up_path, self.ring_size)]
