'''
Author: yc && qq747339545@163.com
Date: 2025-12-04 10:05:31
LastEditTime: 2025-12-09 09:47:12
FilePath: /sdn_backhaul/controller/topo_config.py
Description: 读取 config/ 下的拓扑与控制器配置

Copyright (c) 2025 by ${git_name_email}, All Rights Reserved.
'''
# controller/topo_config.py
import os
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

import yaml

CONFIG_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'config')
TOPO_CFG_FILE = os.path.join(CONFIG_DIR, 'topo_config.yml')
CTRL_CFG_FILE = os.path.join(CONFIG_DIR, 'controller_config.yml')


@dataclass
class TopologyConfig:
    switches: List[int] = field(default_factory=lambda: [1, 2, 3, 4])
    clockwise_port: int = 2
    counter_port: int = 3
    gateway_port: int = 1
    link_capacity_bps: int = 100_000_000
    full_duplex: bool = True
    link_capacity: Dict[Tuple[int, int], int] = field(default_factory=dict)
    gateways: Dict[str, int] = field(default_factory=dict)
    pgw_address: str = ""

    def capacity_for(self, dpid_a: int, dpid_b: int) -> int:
        key = (min(dpid_a, dpid_b), max(dpid_a, dpid_b))
        return self.link_capacity.get(key, self.link_capacity_bps)


@dataclass
class LedgerConfig:
    gbr_quota: float = 0.35
    safeguard_bps: int = 5_000_000
    adjust_step_bps: int = 5_000_000
    ewma_alpha: float = 0.25


@dataclass
class ControllerConfig:
    strategy: str = "spf"
    dedicated_idle_timeout: int = 15
    aggregation: str = "off"
    aggregation_gbr_threshold: float = 0.5
    aggregation_non_gbr_threshold: float = 0.5
    priority_queues: bool = True
    stats_interval: float = 1.0
    snapshot_interval: float = 3.0
    log_dir: str = "logs"
    log_level: str = "INFO"
    log_file: str = ""
    log_json: bool = False


def _load_yaml(path: str) -> dict:
    if not os.path.exists(path):
        return {}
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


def _parse_dpid(value) -> int:
    # dpid 可以写成 "0x1" 或 1
    if isinstance(value, str):
        return int(value, 0)
    return int(value)


def _link_key(text: str) -> Tuple[int, int]:
    a, b = (_parse_dpid(x.strip()) for x in str(text).split("-", 1))
    return (min(a, b), max(a, b))


def load_topology(path: str = TOPO_CFG_FILE) -> TopologyConfig:
    data = _load_yaml(path)
    ring = data.get("ring", {}) or {}
    cfg = TopologyConfig()

    if "switches" in ring:
        cfg.switches = [_parse_dpid(x) for x in ring["switches"]]
    cfg.clockwise_port = int(ring.get("clockwise_port", cfg.clockwise_port))
    cfg.counter_port = int(ring.get("counter_port", cfg.counter_port))
    cfg.gateway_port = int(ring.get("gateway_port", cfg.gateway_port))
    cfg.link_capacity_bps = int(ring.get("link_capacity_bps", cfg.link_capacity_bps))
    cfg.full_duplex = bool(ring.get("full_duplex", cfg.full_duplex))
    for key, cap in (ring.get("links") or {}).items():
        cfg.link_capacity[_link_key(key)] = int(cap)

    gw = data.get("gateways", {}) or {}
    cfg.pgw_address = str(gw.get("pgw_address", ""))
    for addr, idx in (gw.get("addresses") or {}).items():
        cfg.gateways[str(addr)] = int(idx)

    if len(cfg.switches) < 3:
        raise ValueError(f"ring needs at least 3 switches, got {cfg.switches}")
    if len(set(cfg.switches)) != len(cfg.switches):
        raise ValueError(f"duplicate switches in ring: {cfg.switches}")
    if cfg.clockwise_port == cfg.counter_port:
        raise ValueError("clockwise_port and counter_port must differ")
    for addr, idx in cfg.gateways.items():
        if not 0 <= idx < len(cfg.switches):
            raise ValueError(f"gateway {addr}: ring index {idx} out of range")
    if cfg.pgw_address and cfg.pgw_address not in cfg.gateways:
        raise ValueError(f"P-GW address {cfg.pgw_address} missing from gateways")
    ring_links = {_link_key(f"{cfg.switches[i]}-{cfg.switches[(i + 1) % len(cfg.switches)]}")
                  for i in range(len(cfg.switches))}
    for key, cap in cfg.link_capacity.items():
        if key not in ring_links:
            raise ValueError(f"link {key} is not a ring link")
        if cap <= 0:
            raise ValueError(f"link {key}: invalid capacity {cap}")
    return cfg


def load_ledger_params(path: str = TOPO_CFG_FILE) -> LedgerConfig:
    data = _load_yaml(path).get("ledger", {}) or {}
    cfg = LedgerConfig(
        gbr_quota=float(data.get("gbr_quota", LedgerConfig.gbr_quota)),
        safeguard_bps=int(data.get("safeguard_bps", LedgerConfig.safeguard_bps)),
        adjust_step_bps=int(data.get("adjust_step_bps", LedgerConfig.adjust_step_bps)),
        ewma_alpha=float(data.get("ewma_alpha", LedgerConfig.ewma_alpha)),
    )
    if not 0 < cfg.gbr_quota <= 0.5:
        raise ValueError(f"gbr_quota must be in (0, 0.5], got {cfg.gbr_quota}")
    if cfg.adjust_step_bps <= 0 or cfg.safeguard_bps < 0:
        raise ValueError("invalid safeguard_bps / adjust_step_bps")
    if not 0 < cfg.ewma_alpha <= 1:
        raise ValueError(f"ewma_alpha must be in (0, 1], got {cfg.ewma_alpha}")
    return cfg


def load_controller_config(path: str = CTRL_CFG_FILE) -> ControllerConfig:
    data = _load_yaml(path)
    cfg = ControllerConfig()
    for name in cfg.__dataclass_fields__:
        if name not in data or data[name] is None:
            continue
        default = getattr(cfg, name)
        value = data[name]
        # yaml 会把 off/on 解析成 bool
        if name == "aggregation" and isinstance(value, bool):
            value = "on" if value else "off"
        setattr(cfg, name, type(default)(value))

    cfg.strategy = cfg.strategy.lower()
    cfg.aggregation = cfg.aggregation.lower()
    if cfg.strategy not in ("spo", "spf"):
        raise ValueError(f"strategy must be spo or spf, got {cfg.strategy}")
    if cfg.aggregation not in ("off", "on", "auto"):
        raise ValueError(f"aggregation must be off/on/auto, got {cfg.aggregation}")
    if cfg.dedicated_idle_timeout <= 0:
        raise ValueError("dedicated_idle_timeout must be positive")
    for name in ("aggregation_gbr_threshold", "aggregation_non_gbr_threshold"):
        if not 0 <= getattr(cfg, name) <= 1:
            raise ValueError(f"{name} must be in [0, 1]")
    if cfg.stats_interval <= 0 or cfg.snapshot_interval <= 0:
        raise ValueError("stats/snapshot intervals must be positive")
    return cfg
