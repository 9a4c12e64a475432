# controller/bearer_models.py
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional
import time


# 默认承载 / 专用承载的初始规则优先级
DEFAULT_BEARER_PRIORITY = 0x7F
DEDICATED_BEARER_PRIORITY = 0x1FFF


class BackhaulInvariantError(RuntimeError):
    """账本 / 承载状态不一致：属于程序错误，调用方不应捕获处理"""


class RoutingPath(IntEnum):
    """环上的转发方向"""
    LOCAL = 0
    CLOCK = 1
    COUNTER = 2

    def inverted(self) -> "RoutingPath":
        if self is RoutingPath.CLOCK:
            return RoutingPath.COUNTER
        if self is RoutingPath.COUNTER:
            return RoutingPath.CLOCK
        return self


class BlockReason(IntEnum):
    NONE = 0
    BANDWIDTH = 1


@dataclass
class BearerQos:
    """承载 QoS 参数，速率单位 bps"""
    qci: int = 9
    gbr_dl: int = 0
    gbr_ul: int = 0
    mbr_dl: int = 0
    mbr_ul: int = 0

    def is_gbr_qci(self) -> bool:
        return 1 <= self.qci <= 4


@dataclass
class RingPath:
    """
    承载在环上的路径描述：
    - pgw_idx / sgw_idx: 两个端点所在的环交换机下标
    - down_path: 下行 (P-GW -> S-GW) 方向
    - up_path:   上行 (S-GW -> P-GW) 方向，始终是下行的反方向
    """
    pgw_idx: int
    sgw_idx: int
    down_path: RoutingPath = RoutingPath.LOCAL
    up_path: RoutingPath = RoutingPath.LOCAL
    is_default_path: bool = True

    def is_local(self) -> bool:
        return self.pgw_idx == self.sgw_idx

    def set_default_paths(self, down: RoutingPath, up: RoutingPath):
        if self.is_local():
            if down != RoutingPath.LOCAL or up != RoutingPath.LOCAL:
                raise ValueError("local path must be LOCAL in both directions")
        elif RoutingPath.LOCAL in (down, up):
            raise ValueError("LOCAL is only valid when both endpoints share a switch")
        elif up != down.inverted():
            raise ValueError("uplink must be the inverse of downlink")
        self.down_path = down
        self.up_path = up
        self.is_default_path = True

    def invert_paths(self):
        """换到环的另一侧（长路径），本地路径保持不变"""
        if self.is_local():
            return
        self.down_path = self.down_path.inverted()
        self.up_path = self.up_path.inverted()
        self.is_default_path = not self.is_default_path

    def reset_to_default(self):
        if not self.is_default_path:
            self.invert_paths()


@dataclass
class Bearer:
    """一条 GTP 隧道（以 TEID 标识）在控制器侧的完整记录"""
    teid: int
    imsi: int
    cell_id: int
    qos: BearerQos
    pgw_addr: str
    sgw_addr: str
    path: RingPath
    is_default: bool = False

    # 规则参数
    priority: int = DEDICATED_BEARER_PRIORITY
    timeout: int = 0  # 0 = 永不过期（仅默认承载）
    dscp: int = 0
    queue_id: int = 0

    # 状态
    is_active: bool = False
    is_installed: bool = False
    is_blocked: bool = False
    block_reason: BlockReason = BlockReason.NONE
    is_aggregated: bool = False
    is_reserved: bool = False  # 当前是否在链路账本上持有 GBR 预留

    # 业务方向：只有存在流量的方向才下发规则
    has_downlink: bool = True
    has_uplink: bool = True

    # MBR meter 是否已经下发到交换机
    dl_meter_installed: bool = False
    ul_meter_installed: bool = False

    created_at: float = field(default_factory=time.time)
    installed_at: Optional[float] = None

    @property
    def is_gbr(self) -> bool:
        return not self.is_default and self.qos.is_gbr_qci()

    @property
    def gbr_dl(self) -> int:
        return self.qos.gbr_dl if self.is_gbr and self.has_downlink else 0

    @property
    def gbr_ul(self) -> int:
        return self.qos.gbr_ul if self.is_gbr and self.has_uplink else 0

    def activate(self):
        self.is_active = True

    def deactivate(self):
        self.is_active = False
        self.is_installed = False

    def mark_installed(self, installed: bool):
        if installed and not self.is_active:
            raise BackhaulInvariantError(
                f"bearer teid={self.teid:#x} cannot be installed while inactive")
        self.is_installed = installed
        if installed:
            self.installed_at = time.time()

    def set_blocked(self, reason: BlockReason):
        if self.is_default:
            raise BackhaulInvariantError(
                f"default bearer teid={self.teid:#x} cannot be blocked")
        self.is_blocked = True
        self.block_reason = reason

    def clear_block(self):
        self.is_blocked = False
        self.block_reason = BlockReason.NONE

    def increase_priority(self) -> int:
        self.priority += 1
        return self.priority

    def to_dict(self) -> dict:
        return {
            "teid": self.teid,
            "imsi": self.imsi,
            "cell_id": self.cell_id,
            "qci": self.qos.qci,
            "is_default": self.is_default,
            "is_gbr": self.is_gbr,
            "gbr_dl": self.gbr_dl,
            "gbr_ul": self.gbr_ul,
            "priority": self.priority,
            "timeout": self.timeout,
            "dscp": self.dscp,
            "down_path": self.path.down_path.name,
            "up_path": self.path.up_path.name,
            "is_default_path": self.path.is_default_path,
            "active": self.is_active,
            "installed": self.is_installed,
            "blocked": self.is_blocked,
            "block_reason": self.block_reason.name,
            "aggregated": self.is_aggregated,
        }
