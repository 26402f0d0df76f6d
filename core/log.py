"""
core/log.py — 日志初始化

• 根日志器只配置一次，各模块 get_logger(__name__) 即可
• 每条日志自动带上 trace_id（ContextVar），HTTP 请求与后台任务各自独立
• 格式: 时间 [级别] [trace_id] 模块.函数:行号 - 消息

    from core.log import get_logger, trace_ctx
    logger = get_logger(__name__)

    with trace_ctx(order.id):
        logger.info("event=billing.reconcile.start | order_id=%s", order.id)
"""

import logging
import logging.handlers
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Generator, Optional

import colorlog

from core.config import cfg

_trace_id_var: ContextVar[str] = ContextVar("trace_id", default="-")


def _new_trace_id() -> str:
    return uuid.uuid4().hex[:8]


def set_trace_id(tid: Optional[str] = None) -> str:
    """设置当前上下文的 trace_id，为空时生成 8 位短 id。"""
    tid = str(tid or "").strip()[:16] or _new_trace_id()
    _trace_id_var.set(tid)
    return tid


def get_trace_id() -> str:
    return _trace_id_var.get()


@contextmanager
def trace_ctx(trace_id: Optional[str] = None) -> Generator[str, None, None]:
    """后台任务用的 trace 上下文，退出时恢复原值。"""
    token = _trace_id_var.set(str(trace_id or "").strip()[:16] or _new_trace_id())
    try:
        yield _trace_id_var.get()
    finally:
        _trace_id_var.reset(token)


_level = logging.getLevelName(str(cfg.get("log.level", "INFO")).upper())
if not isinstance(_level, int):
    _level = logging.INFO
_LOG_FILE = cfg.get("log.file", "")

_FMT = "%(asctime)s [%(levelname)-5s] [%(trace_id)s] %(name)s.%(funcName)s:%(lineno)d - %(message)s"
_DATE_FMT = "%Y-%m-%d %H:%M:%S"


class _TraceIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = _trace_id_var.get()
        return True


_trace_filter = _TraceIdFilter()
_HANDLER_MARKER = "_is_storefront_handler"


def _setup_logging() -> None:
    """幂等：uvicorn --reload 重复导入时不会叠加 handler。"""
    root = logging.getLogger()
    if any(getattr(h, _HANDLER_MARKER, False) for h in root.handlers):
        return
    root.setLevel(_level)

    console = colorlog.StreamHandler(stream=sys.stdout)
    console.setFormatter(
        colorlog.ColoredFormatter(
            "%(log_color)s" + _FMT,
            datefmt=_DATE_FMT,
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        )
    )
    console.setLevel(_level)
    console.addFilter(_trace_filter)
    setattr(console, _HANDLER_MARKER, True)
    root.addHandler(console)

    if _LOG_FILE:
        fh = logging.handlers.RotatingFileHandler(
            f"{_LOG_FILE}.log",
            maxBytes=5 * 1024 * 1024,
            backupCount=7,
            encoding="utf-8",
        )
        fh.setLevel(_level)
        fh.setFormatter(logging.Formatter(_FMT, datefmt=_DATE_FMT))
        fh.addFilter(_trace_filter)
        setattr(fh, _HANDLER_MARKER, True)
        root.addHandler(fh)


_setup_logging()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
