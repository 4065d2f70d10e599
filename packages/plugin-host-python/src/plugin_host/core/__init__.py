"""Core：错误分类与共享契约。"""

from __future__ import annotations

from plugin_host.core.errors import (
    ChannelClosed,
    FrameworkError,
    FrameworkIssue,
    MalformedParameters,
    OutOfRange,
    PluginHostError,
    PluginStartupError,
    ProcessExited,
    RpcRemoteError,
    UnknownMethod,
)

__all__ = [
    "ChannelClosed",
    "FrameworkError",
    "FrameworkIssue",
    "MalformedParameters",
    "OutOfRange",
    "PluginHostError",
    "PluginStartupError",
    "ProcessExited",
    "RpcRemoteError",
    "UnknownMethod",
]
