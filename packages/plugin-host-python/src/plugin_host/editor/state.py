"""
EditorState 与 EditorStateHandle（共享文档模型 + 单锁访问纪律）。

说明：
- `EditorState` 本身不做同步，只描述文档：行文本、每行 style spans、revision；
- `EditorStateHandle` 持有唯一一把 `threading.Lock`，所有跨线程访问都必须经由它：
  - `locked()`：作用域式加锁（异常路径也保证释放），供 dispatcher 执行“单个请求”的读/写；
  - `line_count/get_line/set_line_styles`：网关方法，每次调用只持锁覆盖一次操作；
  - `on_plugin_connect/on_plugin_disconnect`：登记插件的出站句柄（host 主动调用插件时使用）。
- 任何出站发送（管道 I/O）都发生在锁外：`notify_plugins` 先在锁内复制 peers 列表，再在锁外逐个发送。
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from copy import deepcopy
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol, Sequence, Tuple

from plugin_host.core.errors import ChannelClosed, OutOfRange

logger = logging.getLogger(__name__)

StyleSpans = List[Dict[str, Any]]


def split_lines(text: str) -> List[str]:
    r"""
    只按 `\n` 切分文本并保留行终止符（`\r\n` 的 `\r` 随行保留）。

    说明：
    - `\x0c`、`\x85`、`\u2028` 等字符不是行分隔符，保留在行内；
    - 末尾换行之后不产生空行；空文本得到 0 行。
    """

    pieces = str(text).split("\n")
    lines = [p + "\n" for p in pieces[:-1]]
    if pieces[-1]:
        lines.append(pieces[-1])
    return lines


class OutboundHandle(Protocol):
    """插件出站句柄（RpcWriter 满足该协议）。"""

    def send_rpc_async(self, method: str, params: Any) -> None:
        """发送 notification（不等待回复）。"""


class EditorState:
    """
    文档模型（非线程安全；必须在 EditorStateHandle 的锁内访问）。

    约定：
    - `lines[i]` 为第 i 行原始文本；由 `from_text` 构建时保留行终止符，
      因此 `"".join(lines)` 总是精确还原整个 buffer；
    - `styles[i]` 与 `lines[i]` 一一对应；编辑某行会清空该行 styles。
    """

    def __init__(self, lines: Iterable[str] = ()) -> None:
        """
        创建文档。

        参数：
        - lines：初始行（原样保存，不追加换行）
        """

        self._lines: List[str] = [str(x) for x in lines]
        self._styles: List[StyleSpans] = [[] for _ in self._lines]
        self.revision = 0

    @classmethod
    def from_text(cls, text: str) -> "EditorState":
        """按 `\n` 切分文本（保留行终止符）；空文本得到 0 行。"""

        return cls(split_lines(text))

    def _check_index(self, index: int) -> None:
        """校验行号，越界（含负数）抛 OutOfRange。"""

        if not isinstance(index, int) or isinstance(index, bool) or index < 0 or index >= len(self._lines):
            raise OutOfRange(index, len(self._lines))

    def line_count(self) -> int:
        """当前总行数。"""

        return len(self._lines)

    def get_line(self, index: int) -> str:
        """读取第 index 行文本。"""

        self._check_index(index)
        return self._lines[index]

    def line_styles(self, index: int) -> StyleSpans:
        """读取第 index 行的 style spans（返回副本）。"""

        self._check_index(index)
        return deepcopy(self._styles[index])

    def set_line_styles(self, index: int, spans: Sequence[Dict[str, Any]]) -> None:
        """
        整体替换第 index 行的 style spans。

        参数：
        - index：行号
        - spans：有序 span 列表（内容对本模块不透明；保存深拷贝）
        """

        self._check_index(index)
        self._styles[index] = [deepcopy(dict(s)) for s in spans]
        self.revision += 1

    def text(self) -> str:
        """返回完整 buffer 文本。"""

        return "".join(self._lines)

    def set_text(self, text: str) -> None:
        """替换整个 buffer（所有 styles 清空）。"""

        self._lines = split_lines(text)
        self._styles = [[] for _ in self._lines]
        self.revision += 1

    def insert_line(self, index: int, text: str) -> None:
        """在 index 处插入一行（index == line_count 表示追加）。"""

        if not isinstance(index, int) or index < 0 or index > len(self._lines):
            raise OutOfRange(index, len(self._lines))
        self._lines.insert(index, str(text))
        self._styles.insert(index, [])
        self.revision += 1

    def replace_line(self, index: int, text: str) -> None:
        """替换第 index 行文本，并清空该行 styles。"""

        self._check_index(index)
        self._lines[index] = str(text)
        self._styles[index] = []
        self.revision += 1

    def delete_line(self, index: int) -> None:
        """删除第 index 行（后续行的 styles 随之前移）。"""

        self._check_index(index)
        del self._lines[index]
        del self._styles[index]
        self.revision += 1


@dataclass(frozen=True)
class EditorSnapshot:
    """某一时刻的不可变文档快照（给 UI/报告使用）。"""

    lines: Tuple[str, ...]
    styles: Tuple[Tuple[Dict[str, Any], ...], ...]
    revision: int

    def text(self) -> str:
        """返回快照的完整文本。"""

        return "".join(self.lines)

    def styled_lines(self) -> Dict[int, List[Dict[str, Any]]]:
        """返回非空 styles 的行（行号 -> spans）。"""

        return {i: [dict(s) for s in spans] for i, spans in enumerate(self.styles) if spans}


class EditorStateHandle:
    """
    EditorState 的共享句柄（唯一锁 + 网关方法 + 插件出站句柄登记）。

    使用方式：
    - 单次操作：`handle.get_line(0)`；
    - 请求级原子块：`with handle.locked() as state: ...`（块内不得做任何管道 I/O）。
    """

    def __init__(self, state: Optional[EditorState] = None) -> None:
        """
        创建句柄。

        参数：
        - state：被共享的文档；None 时创建空文档
        """

        self._state = state if state is not None else EditorState()
        self._lock = threading.Lock()
        self._peers: List[OutboundHandle] = []

    @contextmanager
    def locked(self) -> Iterator[EditorState]:
        """作用域式加锁，yield 被保护的 EditorState。"""

        with self._lock:
            yield self._state

    def line_count(self) -> int:
        """网关：读取总行数。"""

        with self.locked() as state:
            return state.line_count()

    def get_line(self, index: int) -> str:
        """网关：读取行文本；越界抛 OutOfRange。"""

        with self.locked() as state:
            return state.get_line(index)

    def line_styles(self, index: int) -> StyleSpans:
        """网关：读取行 styles；越界抛 OutOfRange。"""

        with self.locked() as state:
            return state.line_styles(index)

    def set_line_styles(self, index: int, spans: Sequence[Dict[str, Any]]) -> None:
        """网关：替换行 styles；越界抛 OutOfRange。"""

        with self.locked() as state:
            state.set_line_styles(index, spans)

    def snapshot(self) -> EditorSnapshot:
        """在锁内复制当前文档为不可变快照。"""

        with self.locked() as state:
            n = state.line_count()
            return EditorSnapshot(
                lines=tuple(state.get_line(i) for i in range(n)),
                styles=tuple(tuple(state.line_styles(i)) for i in range(n)),
                revision=state.revision,
            )

    def on_plugin_connect(self, outbound: OutboundHandle) -> None:
        """
        登记插件的出站句柄（host 可借此主动调用插件）。

        说明：
        - 同一句柄重复登记是 no-op；
        - 只做内存登记，不做 I/O。
        """

        with self._lock:
            if not any(p is outbound for p in self._peers):
                self._peers.append(outbound)

    def on_plugin_disconnect(self, outbound: OutboundHandle) -> None:
        """移除插件出站句柄（插件退出后调用；不存在时 no-op）。"""

        with self._lock:
            self._peers = [p for p in self._peers if p is not outbound]

    def connected_peers(self) -> List[OutboundHandle]:
        """返回当前已登记出站句柄的副本。"""

        with self._lock:
            return list(self._peers)

    def notify_plugins(self, method: str, params: Any = None) -> int:
        """
        向所有已连接插件广播 notification。

        参数：
        - method：方法名
        - params：参数（需可 JSON 序列化）

        返回：
        - int：成功写出的插件数量（已关闭通道只记录日志，不抛异常）
        """

        sent = 0
        for peer in self.connected_peers():
            try:
                peer.send_rpc_async(method, params)
                sent += 1
            except ChannelClosed as e:
                logger.warning("notify %s skipped for closed plugin channel: %s", method, e)
        return sent
