"""
RPC 通道：基于两条单向管道的 JSON lines 双向消息传输。

帧格式（每行一个 UTF-8 JSON object，以 `\\n` 结束）：
- request：`{"id": <int>, "method": <str>, "params": <any>}`
- notification：`{"method": <str>, "params": <any>}`（无 id）
- response：`{"id": <int>, "result": <any>}` 或 `{"id": <int>, "error": <any>}`

线程模型：
- `RpcPeer.mainloop` 在专用线程上阻塞读取入站帧，直到 EOF；
- `RpcWriter` 可被任意线程共享（写入 + flush 在同一把锁内完成）；
- `send_rpc_sync` 不可在 mainloop 所在线程调用（回复需要 mainloop 路由）。
"""

from __future__ import annotations

import itertools
import json
import logging
import queue
import threading
from dataclasses import dataclass
from typing import IO, Any, Callable, Dict, Iterator, Optional

from plugin_host.core.errors import ChannelClosed, RpcRemoteError

logger = logging.getLogger(__name__)

DEFAULT_MAX_FRAME_BYTES = 1024 * 1024


@dataclass(frozen=True)
class RpcReply:
    """handler 产出的回复（result 与 error 二选一）。"""

    result: Any = None
    error: Optional[Dict[str, Any]] = None


RpcHandler = Callable[[str, Any], Optional[RpcReply]]

_CLOSED = object()


def _is_valid_id(value: Any) -> bool:
    """帧 id 只允许 int（不含 bool）或 str。"""

    return isinstance(value, str) or (isinstance(value, int) and not isinstance(value, bool))


class RpcWriter:
    """
    线程安全的出站句柄。

    说明：
    - 写失败（BrokenPipe/已关闭）后句柄进入 closed 状态，后续发送统一抛 ChannelClosed；
    - `send_rpc_sync` 的回复由 `RpcPeer.mainloop` 通过 `_deliver_response` 投递。
    """

    def __init__(self, stream: IO[bytes]) -> None:
        """
        创建出站句柄。

        参数：
        - stream：可写二进制流（通常是子进程 stdin）
        """

        self._stream = stream
        self._write_lock = threading.Lock()
        self._closed = False
        self._ids = itertools.count()
        self._pending: Dict[int, "queue.Queue[Any]"] = {}
        self._pending_lock = threading.Lock()

    @property
    def closed(self) -> bool:
        """通道是否已关闭。"""

        return self._closed

    def _write_frame(self, obj: Dict[str, Any]) -> None:
        """序列化并写出一帧；失败时关闭句柄并抛 ChannelClosed。"""

        data = (json.dumps(obj, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")
        with self._write_lock:
            if self._closed:
                raise ChannelClosed()
            try:
                self._stream.write(data)
                self._stream.flush()
            except (OSError, ValueError) as e:
                self._closed = True
                raise ChannelClosed(f"rpc channel write failed: {e}") from e
            finally:
                if self._closed:
                    self._close_stream_locked()

    def _close_stream_locked(self) -> None:
        """关闭出站流（调用方须持有写锁）。"""

        try:
            self._stream.close()
        except (OSError, ValueError) as e:
            logger.debug("closing rpc output stream failed: %s", e)

    def send_rpc_async(self, method: str, params: Any = None) -> None:
        """
        发送 notification（fire-and-forget，不分配 id，不等待回复）。

        参数：
        - method：方法名
        - params：参数（需可 JSON 序列化；None 编码为 null）
        """

        self._write_frame({"method": str(method), "params": params})

    def send_rpc_sync(self, method: str, params: Any = None, *, timeout: Optional[float] = None) -> Any:
        """
        发送 request 并阻塞等待回复。

        参数：
        - method：方法名
        - params：参数
        - timeout：等待秒数；None 表示一直等待（直到回复或通道关闭）

        返回：
        - 对端 result

        异常：
        - RpcRemoteError：对端返回 error
        - ChannelClosed：等待期间通道关闭
        - TimeoutError：超时
        """

        req_id = next(self._ids)
        slot: "queue.Queue[Any]" = queue.Queue(maxsize=1)
        with self._pending_lock:
            if self._closed:
                raise ChannelClosed()
            self._pending[req_id] = slot
        try:
            self._write_frame({"id": req_id, "method": str(method), "params": params})
            try:
                msg = slot.get(timeout=timeout)
            except queue.Empty:
                raise TimeoutError(f"rpc call {method} timed out after {timeout}s") from None
        finally:
            with self._pending_lock:
                self._pending.pop(req_id, None)
        if msg is _CLOSED:
            raise ChannelClosed(f"rpc channel closed while waiting for {method}")
        if "error" in msg:
            raise RpcRemoteError(method, msg.get("error"))
        return msg.get("result")

    def respond(self, req_id: Any, result: Any) -> None:
        """回复成功结果。"""

        self._write_frame({"id": req_id, "result": result})

    def respond_error(self, req_id: Any, error: Dict[str, Any]) -> None:
        """回复错误结果。"""

        self._write_frame({"id": req_id, "error": error})

    def _deliver_response(self, msg: Dict[str, Any]) -> bool:
        """把入站 response 投递给等待中的 send_rpc_sync；无人等待时返回 False。"""

        req_id = msg.get("id")
        if not _is_valid_id(req_id):
            return False
        with self._pending_lock:
            slot = self._pending.pop(req_id, None)
        if slot is None:
            return False
        try:
            slot.put_nowait(msg)
        except queue.Full:
            return False
        return True

    def close(self) -> None:
        """
        关闭出站流，并唤醒所有等待中的同步调用（以 ChannelClosed 结束）。

        说明：
        - 不阻塞：若另一线程正卡在写入（对端不读 stdin、管道已满），只标记 closed，
          由该写线程在写入返回后关闭流；调用方随后可以 terminate/kill 子进程。
        """

        self._closed = True
        if self._write_lock.acquire(blocking=False):
            try:
                self._close_stream_locked()
            finally:
                self._write_lock.release()
        else:
            logger.debug("rpc output stream busy; it will be closed after the pending write returns")
        with self._pending_lock:
            pending = list(self._pending.values())
        for slot in pending:
            try:
                slot.put_nowait(_CLOSED)
            except queue.Full:
                continue


class RpcPeer:
    """
    一条 RPC 通道的两端：入站 reader + 出站 RpcWriter。

    参数：
    - reader：可读二进制流（通常是子进程 stdout）
    - writer：可写二进制流（通常是子进程 stdin）
    - max_frame_bytes：单帧上限；超限帧整行丢弃并记录日志
    """

    def __init__(self, reader: IO[bytes], writer: IO[bytes], *, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> None:
        """创建通道。"""

        self._reader = reader
        self._writer = RpcWriter(writer)
        self._max_frame_bytes = max(1, int(max_frame_bytes))

    def get_writer(self) -> RpcWriter:
        """返回可跨线程共享的出站句柄。"""

        return self._writer

    def _read_line(self) -> Optional[bytes]:
        """
        读取一行原始帧。

        返回：
        - bytes：一行（可能为空白行）
        - b""：超限帧（已丢弃整行）
        - None：EOF 或读失败
        """

        limit = self._max_frame_bytes + 1
        try:
            line = self._reader.readline(limit)
        except (OSError, ValueError) as e:
            logger.warning("rpc channel read failed: %s", e)
            return None
        if not line:
            return None
        if len(line) > self._max_frame_bytes and not line.endswith(b"\n"):
            dropped = len(line)
            while True:
                try:
                    rest = self._reader.readline(limit)
                except (OSError, ValueError):
                    return None
                dropped += len(rest)
                if not rest or rest.endswith(b"\n"):
                    break
            logger.warning("dropping oversized rpc frame (%d bytes > max %d)", dropped, self._max_frame_bytes)
            return b""
        return line

    def iter_messages(self) -> Iterator[Dict[str, Any]]:
        """逐帧解码入站消息，跳过空行/非法 JSON/非 object；EOF 时结束。"""

        while True:
            line = self._read_line()
            if line is None:
                return
            if not line.strip():
                continue
            try:
                msg = json.loads(line.decode("utf-8"))
            except (ValueError, RecursionError) as e:
                logger.warning("dropping malformed rpc frame: %s", str(e)[:200])
                continue
            if not isinstance(msg, dict):
                logger.warning("dropping rpc frame that is not an object: %s", type(msg).__name__)
                continue
            yield msg

    def _handle_message(self, msg: Dict[str, Any], handler: RpcHandler) -> None:
        """处理一条入站消息（response 路由 / request / notification）。"""

        if "id" in msg and msg.get("id") is not None and not _is_valid_id(msg.get("id")):
            logger.warning("dropping rpc frame with invalid id type: %s", type(msg.get("id")).__name__)
            return

        if "method" not in msg:
            if "id" in msg and ("result" in msg or "error" in msg):
                if not self._writer._deliver_response(msg):
                    logger.warning("dropping rpc response with unknown id: %r", msg.get("id"))
                return
            logger.warning("dropping rpc frame without method")
            return

        method = msg.get("method")
        if not isinstance(method, str):
            logger.warning("dropping rpc frame with non-string method: %r", method)
            return
        params = msg.get("params")
        has_id = "id" in msg and msg.get("id") is not None

        try:
            reply = handler(method, params)
        except Exception:
            logger.exception("rpc handler raised for method %s", method)
            reply = RpcReply(error={"error_kind": "internal", "code": "INTERNAL", "message": "internal error"}) if has_id else None

        if reply is None:
            return
        if not has_id:
            logger.debug("reply for %s dropped: request carried no id", method)
            return
        try:
            if reply.error is not None:
                self._writer.respond_error(msg["id"], reply.error)
            else:
                self._writer.respond(msg["id"], reply.result)
        except ChannelClosed as e:
            logger.warning("failed to send reply for %s: %s", method, e)

    def mainloop(self, handler: RpcHandler) -> None:
        """
        阻塞式 receive loop：逐条处理入站消息直到通道关闭。

        参数：
        - handler：`(method, params) -> Optional[RpcReply]`；返回 None 表示不回复

        说明：
        - 单条消息的任何异常都不会终止循环；只有 EOF/读失败结束循环；
        - 退出前关闭出站句柄（唤醒等待中的同步调用）。
        """

        try:
            for msg in self.iter_messages():
                try:
                    self._handle_message(msg, handler)
                except Exception:
                    logger.exception("rpc frame handling failed; frame dropped")
        finally:
            self._writer.close()
