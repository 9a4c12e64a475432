'''
Author: yc && qq747339545@163.com
Date: 2025-11-25 15:39:46
LastEditTime: 2025-12-10 17:26:51
FilePath: /sdn_backhaul/controller/backhaul_logger.py
Description: 控制器日志（JSON 结构化字段 + 按实验编号分目录）

Copyright (c) 2025 by ${git_name_email}, All Rights Reserved.
'''
# controller/backhaul_logger.py
import json
import logging
import logging.handlers
import os
import re
import time
from datetime import datetime
from typing import Dict, List, Optional, Tuple

# 这些字段在 JSON 里按十六进制输出，和交换机上的 cookie / tunnel_id 对得上
HEX_FIELDS = ("teid", "cookie")

_RUN_DIR_RE = re.compile(r"^(\d{8})_(\d+)$")


class JSONFormatter(logging.Formatter):
    """一行一个 JSON：ts / level / name / message / run_id + log_with_extra 的字段"""

    def __init__(self, run_id: Optional[str] = None):
        super().__init__()
        self.run_id = run_id

    def format(self, record):
        out = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime(record.created)),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        if self.run_id:
            out["run_id"] = self.run_id
        fields = getattr(record, "extra", None)
        if isinstance(fields, dict):
            for key, value in fields.items():
                if key in HEX_FIELDS and isinstance(value, int):
                    value = f"{value:#x}"
                elif key in ("teids", "cookies") and isinstance(value, list):
                    value = [f"{v:#x}" for v in value]
                out[key] = value
        if record.exc_info:
            out["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(out, ensure_ascii=False)


class SimpleLogger:
    """
    进程内只配置一次的根 logger。
    ryu-manager 自己已经挂了控制台 handler，所以 RyuApp 里用 console=False，
    只额外加一个写到实验目录下的滚动文件。
    """

    _initialized = False
    _handlers: List[logging.Handler] = []
    _loggers: Dict[str, logging.Logger] = {}

    @classmethod
    def init(cls,
             level=logging.INFO,
             log_file: Optional[str] = None,
             max_bytes: int = 10 * 1024 * 1024,
             backup_count: int = 5,
             json_format: bool = True,
             console: bool = True,
             run_id: Optional[str] = None,
             run_dir: Optional[str] = None):
        if cls._initialized:
            return
        if isinstance(level, str):
            level = logging.getLevelName(level.upper())
        if json_format:
            fmt = JSONFormatter(run_id)
        else:
            fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

        root = logging.getLogger()
        root.setLevel(level)
        if console:
            cls._attach(root, logging.StreamHandler(), fmt)

        # 相对路径放进本次实验目录
        if log_file and run_dir and not os.path.isabs(log_file):
            log_file = os.path.join(run_dir, log_file)
        if log_file:
            try:
                handler = logging.handlers.RotatingFileHandler(
                    filename=log_file, maxBytes=max_bytes, backupCount=backup_count)
            except OSError:
                root.warning("[logger] cannot open %s, file logging disabled", log_file)
            else:
                cls._attach(root, handler, fmt)
        cls._initialized = True

    @classmethod
    def _attach(cls, root: logging.Logger, handler: logging.Handler, fmt: logging.Formatter):
        handler.setFormatter(fmt)
        root.addHandler(handler)
        cls._handlers.append(handler)

    @classmethod
    def shutdown(cls):
        root = logging.getLogger()
        for handler in cls._handlers:
            root.removeHandler(handler)
            handler.close()
        cls._handlers = []
        cls._loggers = {}
        cls._initialized = False

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        if not cls._initialized:
            cls.init()
        if name not in cls._loggers:
            cls._loggers[name] = logging.getLogger(name)
        return cls._loggers[name]


def log_with_extra(logger, level, msg, **extra):
    """extra 字段挂在 record.extra 上，由 JSONFormatter 展开"""
    if extra:
        logger.log(level, msg, extra={"extra": extra})
    else:
        logger.log(level, msg)


def alloc_run_id(base_dir: str = "logs") -> Tuple[str, str]:
    """
    在 base_dir 下新建当天的下一个实验目录 YYYYMMDD_N，返回 (run_id, run_dir)。
    LinkSnapshot / Bearer_Reserve 等日志都写在 run_dir 下面。
    """
    os.makedirs(base_dir, exist_ok=True)
    today = datetime.now().strftime("%Y%m%d")

    used = [0]
    for name in os.listdir(base_dir):
        m = _RUN_DIR_RE.match(name)
        if m and m.group(1) == today:
            used.append(int(m.group(2)))

    run_id = f"{today}_{max(used) + 1}"
    run_dir = os.path.join(base_dir, run_id)
    os.makedirs(run_dir, exist_ok=True)
    return run_id, run_dir
