"""插件进程监管（spawn / 握手 / dispatch 线程 / 退出报告）。"""

from __future__ import annotations

from plugin_host.supervisor.process import ExitStatus, PluginLifecycle, PluginProcess
from plugin_host.supervisor.supervisor import (
    LIVENESS_PROBE_METHOD,
    PluginHandle,
    PluginHost,
    ProcessSupervisor,
    resolve_host_binary_dir,
    resolve_plugin_path,
)

__all__ = [
    "ExitStatus",
    "LIVENESS_PROBE_METHOD",
    "PluginHandle",
    "PluginHost",
    "PluginLifecycle",
    "PluginProcess",
    "ProcessSupervisor",
    "resolve_host_binary_dir",
    "resolve_plugin_path",
]
