"""插件请求解码与派发。"""

from __future__ import annotations

from plugin_host.dispatch.dispatcher import DispatchOutcome, DispatchStats, RequestDispatcher, error_payload
from plugin_host.dispatch.requests import (
    ApplyLineStyles,
    MalformedRequest,
    PluginMethod,
    PluginRequest,
    QueryLine,
    QueryLineCount,
    StyleSpan,
    UnknownRequest,
    decode_request,
    method_semantics,
)

__all__ = [
    "ApplyLineStyles",
    "DispatchOutcome",
    "DispatchStats",
    "MalformedRequest",
    "PluginMethod",
    "PluginRequest",
    "QueryLine",
    "QueryLineCount",
    "RequestDispatcher",
    "StyleSpan",
    "UnknownRequest",
    "decode_request",
    "error_payload",
    "method_semantics",
]
