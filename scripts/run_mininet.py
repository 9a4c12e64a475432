'''
Author: yc && qq747339545@163.com
Date: 2025-12-04 16:31:07
LastEditTime: 2025-12-09 10:02:45
FilePath: /sdn_backhaul/scripts/run_mininet.py
Description: 环形回传拓扑

Copyright (c) 2025 by ${git_name_email}, All Rights Reserved.
'''
#!/usr/bin/env python3
# scripts/run_mininet.py
#
# 4 台 OVS 组成环 s1 - s2 - s3 - s4 - s1，每台挂一个网关主机 gwN (10.2.0.N)，
# gw1 是 P-GW。
# 端口约定和 config/topo_config.yml 一致：
#   port 1 -> 网关, port 2 -> 顺时针下一台, port 3 -> 逆时针上一台

import argparse

from mininet.net import Mininet
from mininet.node import RemoteController, OVSSwitch
from mininet.cli import CLI
from mininet.link import TCLink
from mininet.log import setLogLevel

GATEWAY_PORT = 1
CLOCKWISE_PORT = 2
COUNTER_PORT = 3


def build(net, n: int, bw_mbps: float):
    switches = [net.addSwitch(f's{i + 1}', dpid=f'{i + 1:016x}', protocols='OpenFlow13')
                for i in range(n)]
    for i, sw in enumerate(switches):
        # 10.2.0.1 是 P-GW，其余是 S-GW
        gw = net.addHost(f'gw{i + 1}', ip=f'10.2.0.{i + 1}/24')
        net.addLink(gw, sw, port2=GATEWAY_PORT)

    for i, sw in enumerate(switches):
        nxt = switches[(i + 1) % n]
        net.addLink(sw, nxt, port1=CLOCKWISE_PORT, port2=COUNTER_PORT, bw=bw_mbps)
    return switches


def run():
    parser = argparse.ArgumentParser()
    parser.add_argument('--switches', type=int, default=4)
    parser.add_argument('--bw', type=float, default=100, help='环链路带宽 (Mbps)')
    parser.add_argument('--controller', default='127.0.0.1')
    parser.add_argument('--port', type=int, default=6633)
    args = parser.parse_args()

    setLogLevel('info')
    net = Mininet(controller=RemoteController, switch=OVSSwitch, link=TCLink, autoSetMacs=True)
    net.addController('c0', controller=RemoteController, ip=args.controller, port=args.port)
    build(net, args.switches, args.bw)

    net.start()
    # 网关之间同网段，静态 ARP 省掉广播
    net.staticArp()

    print("*** Ring started")
    print("*** Create sessions with: curl -X POST http://<ctrl>:8080/backhaul/session -d '{...}'")

    CLI(net)
    net.stop()


if __name__ == '__main__':
    run()
