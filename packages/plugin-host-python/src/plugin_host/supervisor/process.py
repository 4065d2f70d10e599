"""
PluginProcess：单个插件子进程的生命周期记录。

生命周期：
`not_started -> spawned -> connected -> dispatching -> exited`
- 任意非终态都可直接进入 exited（启动失败/通道关闭/子进程退出）；
- exited 为终态，且只会被观察到一次（`mark_exited` 仅首次返回 True）。
"""

from __future__ import annotations

import signal
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class PluginLifecycle(str, Enum):
    """插件生命周期状态。"""

    NOT_STARTED = "not_started"
    SPAWNED = "spawned"
    CONNECTED = "connected"
    DISPATCHING = "dispatching"
    EXITED = "exited"


_ALLOWED = {
    PluginLifecycle.NOT_STARTED: {PluginLifecycle.SPAWNED, PluginLifecycle.EXITED},
    PluginLifecycle.SPAWNED: {PluginLifecycle.CONNECTED, PluginLifecycle.EXITED},
    PluginLifecycle.CONNECTED: {PluginLifecycle.DISPATCHING, PluginLifecycle.EXITED},
    PluginLifecycle.DISPATCHING: {PluginLifecycle.EXITED},
    PluginLifecycle.EXITED: set(),
}


def _signal_name(signum: int) -> str:
    """把信号编号转换为名称（未知编号返回 `SIG<n>`）。"""

    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"SIG{signum}"


@dataclass(frozen=True)
class ExitStatus:
    """
    插件退出状态。

    字段：
    - kind：success|exit_code|signal|startup_error|wait_error
    - code：退出码（kind=success/exit_code）
    - signal：信号编号（kind=signal）
    - message：补充说明（启动/等待失败原因）
    """

    kind: str
    code: Optional[int] = None
    signal: Optional[int] = None
    message: str = ""

    @classmethod
    def from_returncode(cls, returncode: int) -> "ExitStatus":
        """由 `Popen.returncode` 构造（负数表示被信号终止）。"""

        rc = int(returncode)
        if rc == 0:
            return cls(kind="success", code=0)
        if rc < 0:
            return cls(kind="signal", signal=-rc)
        return cls(kind="exit_code", code=rc)

    @classmethod
    def startup_error(cls, message: str) -> "ExitStatus":
        """启动失败（子进程从未运行）。"""

        return cls(kind="startup_error", message=message)

    @classmethod
    def wait_error(cls, message: str) -> "ExitStatus":
        """等待子进程退出失败。"""

        return cls(kind="wait_error", message=message)

    @property
    def ok(self) -> bool:
        """是否正常退出（exit code 0）。"""

        return self.kind == "success"

    def describe(self) -> str:
        """返回用于日志的可读摘要。"""

        if self.kind == "success":
            return "exited successfully"
        if self.kind == "exit_code":
            return f"exited with code {self.code}"
        if self.kind == "signal":
            return f"killed by signal {_signal_name(int(self.signal or 0))}"
        return f"{self.kind}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """转换为可 JSON 序列化的 dict。"""

        return {"kind": self.kind, "code": self.code, "signal": self.signal, "message": self.message}


class PluginProcess:
    """
    单个插件子进程的生命周期记录（线程安全）。

    说明：
    - 由 ProcessSupervisor 独占写入；其它线程只读；
    - `done` 事件在进入 exited 时置位，作为可观察的完成信号。
    """

    def __init__(self, name: str) -> None:
        """创建处于 not_started 的记录。"""

        self.name = name
        self.pid: Optional[int] = None
        self.writer: Any = None
        self._lock = threading.Lock()
        self._state = PluginLifecycle.NOT_STARTED
        self._exit_status: Optional[ExitStatus] = None
        self.done = threading.Event()

    @property
    def state(self) -> PluginLifecycle:
        """当前生命周期状态。"""

        with self._lock:
            return self._state

    @property
    def exit_status(self) -> Optional[ExitStatus]:
        """退出状态（未退出时为 None）。"""

        with self._lock:
            return self._exit_status

    def transition(self, new_state: PluginLifecycle) -> None:
        """
        推进到非终态。

        异常：
        - RuntimeError：非法迁移（包括试图用本方法进入 exited）
        """

        with self._lock:
            if new_state == PluginLifecycle.EXITED or new_state not in _ALLOWED[self._state]:
                raise RuntimeError(f"plugin {self.name}: illegal transition {self._state.value} -> {new_state.value}")
            self._state = new_state

    def mark_exited(self, status: ExitStatus) -> bool:
        """
        进入 exited 终态。

        返回：
        - True：首次进入（调用方负责报告）
        - False：已处于 exited（忽略本次状态）
        """

        with self._lock:
            if self._state == PluginLifecycle.EXITED:
                return False
            self._state = PluginLifecycle.EXITED
            self._exit_status = status
        self.done.set()
        return True

    def to_dict(self) -> Dict[str, Any]:
        """转换为可 JSON 序列化的状态摘要。"""

        status = self.exit_status
        return {
            "name": self.name,
            "pid": self.pid,
            "state": self.state.value,
            "exit_status": status.to_dict() if status is not None else None,
        }
