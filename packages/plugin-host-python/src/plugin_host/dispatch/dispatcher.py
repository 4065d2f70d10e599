"""
RequestDispatcher：把一条入站请求路由到一次 EditorState 读/写，并给出可选回复。

执行纪律：
- 解码（校验）在加锁之前完成；
- 每个请求只加锁一次，只做一次读或一次写，随即释放；锁内不做任何 I/O；
- call 语义的方法总是产出一个回复（result 或 error）；notification 语义的方法永不回复，
  错误只记录日志；
- 任何异常都在这里终止，不会穿透 receive loop。
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from plugin_host.core.errors import FrameworkError, MalformedParameters, OutOfRange, UnknownMethod
from plugin_host.dispatch.requests import (
    ApplyLineStyles,
    MalformedRequest,
    PluginRequest,
    QueryLine,
    QueryLineCount,
    UnknownRequest,
    decode_request,
    method_semantics,
)
from plugin_host.editor.state import EditorStateHandle
from plugin_host.rpc.peer import RpcReply

logger = logging.getLogger(__name__)


def error_payload(e: Exception) -> Dict[str, Any]:
    """
    将异常映射为稳定的 RPC 错误结构。

    返回：
    - error_kind：malformed_params|out_of_range|internal
    - code：稳定错误码
    - message：可读错误信息
    """

    kind = str(getattr(e, "error_kind", "") or "internal")
    code = e.code if isinstance(e, FrameworkError) else "INTERNAL"
    msg = e.message if isinstance(e, FrameworkError) else (str(e) or kind)
    return {"error_kind": kind, "code": code, "message": msg}


@dataclass(frozen=True)
class DispatchOutcome:
    """单次 dispatch 的结果。"""

    method: str
    respond: bool
    result: Any = None
    error: Optional[Dict[str, Any]] = None

    def reply(self) -> Optional[RpcReply]:
        """转换为 RpcPeer 需要的回复；notification 返回 None。"""

        if not self.respond:
            return None
        return RpcReply(result=self.result, error=self.error)


class DispatchStats:
    """dispatch 计数（线程安全；仅用于诊断）。"""

    def __init__(self) -> None:
        """创建空计数。"""

        self._lock = threading.Lock()
        self._counts: Dict[str, int] = {}

    def incr(self, key: str) -> None:
        """计数 +1。"""

        with self._lock:
            self._counts[key] = self._counts.get(key, 0) + 1

    def snapshot(self) -> Dict[str, int]:
        """返回计数副本。"""

        with self._lock:
            return dict(self._counts)


class RequestDispatcher:
    """
    插件请求派发器（每个插件一个实例，运行在该插件的 dispatch 线程上）。

    参数：
    - handle：共享 EditorStateHandle（构造时显式注入）
    - plugin_name：仅用于日志
    """

    def __init__(self, handle: EditorStateHandle, *, plugin_name: str = "plugin") -> None:
        """创建派发器。"""

        self._handle = handle
        self._plugin_name = plugin_name
        self.stats = DispatchStats()

    def dispatch(self, method: str, params: Any) -> DispatchOutcome:
        """
        执行一条请求。

        参数：
        - method：原始方法名
        - params：原始参数（不可信）

        返回：
        - DispatchOutcome：respond=True 当且仅当方法为 call 语义
        """

        request = decode_request(method, params)
        try:
            return self._execute(request)
        except Exception as e:
            logger.exception("plugin %s: unexpected failure dispatching %s", self._plugin_name, method)
            self.stats.incr("internal_error")
            if method_semantics(method) == "call":
                return DispatchOutcome(method=method, respond=True, error=error_payload(e))
            return DispatchOutcome(method=method, respond=False)

    def _fail(self, method: str, e: FrameworkError) -> DispatchOutcome:
        """按方法语义处理请求级错误：call 回复 error，notification 记录日志后丢弃。"""

        self.stats.incr(e.code.lower())
        if method_semantics(method) == "call":
            logger.debug("plugin %s: %s failed: %s", self._plugin_name, method, e)
            return DispatchOutcome(method=method, respond=True, error=error_payload(e))
        logger.warning("plugin %s: notification %s ignored: %s", self._plugin_name, method, e)
        return DispatchOutcome(method=method, respond=False)

    def _execute(self, request: PluginRequest) -> DispatchOutcome:
        """对 tagged 请求做穷尽处理。"""

        if isinstance(request, MalformedRequest):
            return self._fail(request.method, MalformedParameters(request.method, request.reason))

        if isinstance(request, UnknownRequest):
            self.stats.incr("unknown_method")
            logger.warning("plugin %s: %s", self._plugin_name, UnknownMethod(request.method).message)
            return DispatchOutcome(method=request.method, respond=False)

        if isinstance(request, QueryLineCount):
            with self._handle.locked() as state:
                n = state.line_count()
            self.stats.incr("ok")
            return DispatchOutcome(method=request.method, respond=True, result=n)

        if isinstance(request, QueryLine):
            try:
                with self._handle.locked() as state:
                    text = state.get_line(request.line)
            except OutOfRange as e:
                return self._fail(request.method, e)
            self.stats.incr("ok")
            return DispatchOutcome(method=request.method, respond=True, result=text)

        if isinstance(request, ApplyLineStyles):
            try:
                with self._handle.locked() as state:
                    state.set_line_styles(request.line, request.spans)
            except OutOfRange as e:
                return self._fail(request.method, e)
            self.stats.incr("ok")
            return DispatchOutcome(method=request.method, respond=False)

        raise TypeError(f"unhandled plugin request type: {type(request).__name__}")
