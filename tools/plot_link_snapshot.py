'''
Author: yc && qq747339545@163.com
Date: 2025-12-10 10:12:20
LastEditTime: 2025-12-10 10:40:03
FilePath: /sdn_backhaul/tools/plot_link_snapshot.py
Description: 链路账本快照画图

Copyright (c) 2025 by ${git_name_email}, All Rights Reserved.
'''
#!/usr/bin/env python3
"""
从 LinkSnapshot/link_snapshot.log 解析某条环链路一个方向的
GBR 预留 / Non-GBR 上限 / 保护带 / EWMA 吞吐 并画图。

用法示例：
    python plot_link_snapshot.py \
        logs/20251209_1/LinkSnapshot/link_snapshot.log \
        --link 1-2 --dir FWD
"""

import argparse
import re
from datetime import datetime

import matplotlib.pyplot as plt

SNAPSHOT_TS_FMT = "%Y-%m-%d %H:%M:%S"

HEADER_RE = re.compile(r"^(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}) \[LinkSnapshot\]")
LINE_RE = re.compile(
    r"^\s*s(\d+)-s(\d+):(FWD|BWD)\s+cap=(\d+)\s+reserved=(\d+)\s+allowed=(\d+)\s+"
    r"guard=(-?\d+)\s+ewma_gbr=(\d+)\s+ewma_non_gbr=(\d+)"
)

SERIES = ("reserved", "allowed", "guard", "ewma_gbr", "ewma_non_gbr")


def parse_log(log_path: str, sw0: int, sw1: int, direction: str):
    """返回 (时间列表, {字段名: 数值列表})"""
    times = []
    series = {name: [] for name in SERIES}
    cur_ts = None

    with open(log_path, "r", encoding="utf-8") as f:
        for raw in f:
            line = raw.rstrip("\n")
            m = HEADER_RE.match(line)
            if m:
                cur_ts = datetime.strptime(m.group(1), SNAPSHOT_TS_FMT)
                continue

            m = LINE_RE.match(line)
            if not m or cur_ts is None:
                continue
            if (int(m.group(1)), int(m.group(2)), m.group(3)) != (sw0, sw1, direction):
                continue

            times.append(cur_ts)
            for name, value in zip(SERIES, m.groups()[4:]):
                series[name].append(int(value))

    return times, series


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("log_path", help="link_snapshot.log 路径")
    parser.add_argument("--link", required=True,
                        help="按注册顺序写的链路，例如 1-2（sw0-sw1）")
    parser.add_argument("--dir", default="FWD", choices=["FWD", "BWD"],
                        help="FWD: sw0->sw1, BWD: sw1->sw0")
    args = parser.parse_args()

    sw0, sw1 = (int(x) for x in args.link.split("-", 1))
    t, series = parse_log(args.log_path, sw0, sw1, args.dir)
    if not t:
        print("没有解析到任何数据，确认一下 link/dir 和日志路径是否正确。")
        return

    plt.figure()
    for name in SERIES:
        plt.plot(t, [x / 1e6 for x in series[name]], label=f"{name} (Mbps)")

    plt.xlabel("time")
    plt.ylabel("Mbps")
    plt.title(f"Link s{sw0}-s{sw1} {args.dir} over time")
    plt.legend()
    plt.grid(True)
    plt.tight_layout()
    plt.show()


if __name__ == "__main__":
    main()
