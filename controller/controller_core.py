'''
Author: yc && qq747339545@163.com
Date: 2025-12-04 15:27:02
LastEditTime: 2025-12-09 11:36:50
FilePath: /sdn_backhaul/controller/controller_core.py
Description: 按配置组装路径 / 账本 / 接纳 / 安装 / 承载管理

Copyright (c) 2025 by ${git_name_email}, All Rights Reserved.
'''
# controller/controller_core.py
import logging
from dataclasses import dataclass
from typing import Optional

from admission_control import AdmissionControl, RoutingStrategy
from bearer_manager import AggregationMode, BearerManager, BearerRepository
from dscp_manager import DSCPManager
from flow_installer import FlowInstaller
from link_ledger import LinkLedger, LinkLedgerBook
from path_manager import PathManager
from topo_config import ControllerConfig, LedgerConfig, TopologyConfig

LOG = logging.getLogger('controller_core')


@dataclass
class BackhaulCore:
    path_mgr: PathManager
    links: LinkLedgerBook
    admission: AdmissionControl
    dscp_mgr: DSCPManager
    installer: FlowInstaller
    bearers: BearerRepository
    manager: BearerManager


def build_core(topo: TopologyConfig, ledger_cfg: LedgerConfig,
               ctrl_cfg: ControllerConfig, pusher,
               log_root: Optional[str] = None) -> BackhaulCore:
    path_mgr = PathManager(topo.switches)
    for addr, idx in topo.gateways.items():
        path_mgr.register_gateway(addr, idx)

    installer = FlowInstaller(pusher, path_mgr,
                              clockwise_port=topo.clockwise_port,
                              counter_port=topo.counter_port,
                              gateway_port=topo.gateway_port)

    # 链路按顺时针注册：sw0 = 第 i 台，sw1 = 第 i+1 台
    links = LinkLedgerBook()
    n = len(topo.switches)
    for i in range(n):
        sw0 = topo.switches[i]
        sw1 = topo.switches[(i + 1) % n]
        link = LinkLedger(sw0, sw1, topo.capacity_for(sw0, sw1),
                          gbr_quota=ledger_cfg.gbr_quota,
                          safeguard_bps=ledger_cfg.safeguard_bps,
                          adjust_step_bps=ledger_cfg.adjust_step_bps,
                          full_duplex=topo.full_duplex,
                          ewma_alpha=ledger_cfg.ewma_alpha)
        links.add(link)
        installer.install_link(link)
    installer.install_transit_rules()

    admission = AdmissionControl(path_mgr, links,
                                 strategy=RoutingStrategy(ctrl_cfg.strategy),
                                 log_root=log_root)
    dscp_mgr = DSCPManager(priority_queues=ctrl_cfg.priority_queues)
    bearers = BearerRepository()
    manager = BearerManager(bearers, admission, installer, path_mgr, dscp_mgr,
                            pgw_addr=topo.pgw_address,
                            dedicated_timeout=ctrl_cfg.dedicated_idle_timeout,
                            aggregation=AggregationMode(ctrl_cfg.aggregation),
                            gbr_threshold=ctrl_cfg.aggregation_gbr_threshold,
                            non_gbr_threshold=ctrl_cfg.aggregation_non_gbr_threshold)

    LOG.info("[core] ring of %d switches, %d links, strategy=%s aggregation=%s",
             n, len(links), ctrl_cfg.strategy, ctrl_cfg.aggregation)
    return BackhaulCore(path_mgr, links, admission, dscp_mgr, installer, bearers, manager)
