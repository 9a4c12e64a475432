import pytest

from bearer_models import Bearer, BearerQos, RingPath
from controller_core import build_core
from topo_config import ControllerConfig, LedgerConfig, TopologyConfig

PGW_ADDR = "10.2.0.1"
MBPS = 1_000_000


class FakePusher:
    """记录下发的规则；只有 connected 里的交换机能 push 成功"""

    def __init__(self, connected=()):
        self.connected = set(connected)
        self.pushed = []
        self.scheduled = []

    def push(self, dpid, rule):
        if dpid not in self.connected:
            return False
        self.pushed.append((dpid, rule))
        return True

    def schedule(self, dpid, rule):
        self.scheduled.append((dpid, rule))

    def clear(self):
        self.pushed.clear()
        self.scheduled.clear()


def ring_topology(n=4, capacity=100 * MBPS, full_duplex=True):
    # 第 i 台交换机 (dpid i+1) 上挂着网关 10.2.0.(i+1)，P-GW 在第 0 台
    return TopologyConfig(
        switches=list(range(1, n + 1)),
        link_capacity_bps=capacity,
        full_duplex=full_duplex,
        gateways={f"10.2.0.{i + 1}": i for i in range(n)},
        pgw_address=PGW_ADDR,
    )


@pytest.fixture
def pusher():
    return FakePusher(connected=range(1, 5))


@pytest.fixture
def make_core(pusher):
    def _make(n=4, full_duplex=True, quota=0.4, log_root=None, **ctrl):
        topo = ring_topology(n=n, full_duplex=full_duplex)
        pusher.connected.update(topo.switches)
        ledger = LedgerConfig(gbr_quota=quota, safeguard_bps=5 * MBPS,
                              adjust_step_bps=5 * MBPS, ewma_alpha=0.25)
        return build_core(topo, ledger, ControllerConfig(**ctrl), pusher, log_root=log_root)
    return _make


@pytest.fixture
def core(make_core):
    return make_core()


@pytest.fixture
def make_bearer():
    """直接构造一个承载并登记到 core 的仓库，绕过会话建立"""
    def _make(core, teid, sgw_addr="10.2.0.2", qci=9, gbr_dl=0, gbr_ul=0,
              mbr_dl=0, mbr_ul=0, priority=None, is_default=False):
        path_mgr = core.path_mgr
        bearer = Bearer(
            teid=teid, imsi=teid, cell_id=1,
            qos=BearerQos(qci=qci, gbr_dl=gbr_dl, gbr_ul=gbr_ul,
                          mbr_dl=mbr_dl, mbr_ul=mbr_ul),
            pgw_addr=PGW_ADDR, sgw_addr=sgw_addr,
            path=RingPath(pgw_idx=path_mgr.get_switch_index(PGW_ADDR),
                          sgw_idx=path_mgr.get_switch_index(sgw_addr)),
            is_default=is_default,
            timeout=0 if is_default else 15,
        )
        path_mgr.reset_path(bearer.path)
        if priority is not None:
            bearer.priority = priority
        core.bearers.add(bearer)
        return bearer
    return _make
