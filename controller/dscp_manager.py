'''
Author: yc && qq747339545@163.com
Date: 2025-11-25 09:51:05
LastEditTime: 2025-12-03 16:20:14
FilePath: /sdn_backhaul/controller/dscp_manager.py
Description: DSCP 管理模块

Copyright (c) 2025 by ${git_name_email}, All Rights Reserved.
'''
# controller/dscp_manager.py
from typing import Dict

DSCP_BE = 0
DSCP_AF11 = 10
DSCP_AF41 = 34
DSCP_EF = 46


class DSCPManager:
    """
    承载 QCI -> DSCP 标记，DSCP -> 交换机端口队列：
    - QCI 1-3: EF   -> queue 2
    - QCI 4:   AF41 -> queue 1
    - QCI 5-8: AF11 -> queue 1
    - QCI 9:   BE   -> queue 0
    priority_queues 关闭时所有流量都走 queue 0。
    """

    QCI_DSCP: Dict[int, int] = {
        1: DSCP_EF, 2: DSCP_EF, 3: DSCP_EF,
        4: DSCP_AF41,
        5: DSCP_AF11, 6: DSCP_AF11, 7: DSCP_AF11, 8: DSCP_AF11,
        9: DSCP_BE,
    }

    DSCP_QUEUE: Dict[int, int] = {
        DSCP_EF: 2,
        DSCP_AF41: 1,
        DSCP_AF11: 1,
        DSCP_BE: 0,
    }

    def __init__(self, priority_queues: bool = True):
        self.priority_queues = priority_queues

    def dscp_for_qci(self, qci: int) -> int:
        try:
            return self.QCI_DSCP[qci]
        except KeyError:
            raise ValueError(f"unknown QCI {qci}") from None

    def queue_for_dscp(self, dscp: int) -> int:
        if not self.priority_queues:
            return 0
        return self.DSCP_QUEUE.get(dscp, 0)
