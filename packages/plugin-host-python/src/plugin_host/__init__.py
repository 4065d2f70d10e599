"""
Editor Plugin Host（Python）。

说明：
- 启动外部插件进程，通过 stdin/stdout 上的 JSON lines RPC 与之双向通信；
- 插件的入站调用被路由到共享的、单锁保护的 EditorState；只有 call 语义的方法才会回复；
- 包含：
  - EditorState / EditorStateHandle（文档模型 + 锁纪律）
  - RpcPeer / RpcWriter（帧化通道）
  - RequestDispatcher（校验式解码 + 封闭方法集合）
  - ProcessSupervisor / PluginHost（spawn、握手、dispatch 线程、退出报告）
  - 配置加载器（YAML overlay + pydantic 校验）
"""

from __future__ import annotations

from plugin_host.dispatch.dispatcher import DispatchOutcome, RequestDispatcher
from plugin_host.editor.state import EditorState, EditorStateHandle
from plugin_host.rpc.peer import RpcPeer, RpcWriter
from plugin_host.supervisor.process import ExitStatus, PluginLifecycle
from plugin_host.supervisor.supervisor import PluginHandle, PluginHost, ProcessSupervisor

__all__ = [
    "DispatchOutcome",
    "EditorState",
    "EditorStateHandle",
    "ExitStatus",
    "PluginHandle",
    "PluginHost",
    "PluginLifecycle",
    "ProcessSupervisor",
    "RequestDispatcher",
    "RpcPeer",
    "RpcWriter",
    "__version__",
]

__version__ = "0.1.0"
