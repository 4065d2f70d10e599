"""RPC 通道（JSON lines over pipes）。"""

from __future__ import annotations

from plugin_host.rpc.peer import DEFAULT_MAX_FRAME_BYTES, RpcHandler, RpcPeer, RpcReply, RpcWriter

__all__ = ["DEFAULT_MAX_FRAME_BYTES", "RpcHandler", "RpcPeer", "RpcReply", "RpcWriter"]
