"""
Plugin host 内部错误分类（异常类型）。

说明：
- 所有异常都携带稳定的 `code`（英文大写下划线）与英文 `message`，便于日志检索与测试断言；
- 单个请求级错误（MalformedParameters/OutOfRange/UnknownMethod）只在 dispatcher 内部流转，不会穿透 receive loop；
- 仅 ChannelClosed/ProcessExited 表示某个插件进程的生命周期终结。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


class PluginHostError(Exception):
    """Plugin host 错误基类（不建议直接抛出）。"""


@dataclass(frozen=True)
class FrameworkIssue:
    """结构化问题对象（用于 CLI 输出与日志）。"""

    code: str
    message: str
    details: Dict[str, Any]


class FrameworkError(PluginHostError):
    """框架层结构化错误（英文 `code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建框架错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：英文错误消息
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"

    def to_issue(self) -> FrameworkIssue:
        """把异常转换为可序列化问题对象。"""

        return FrameworkIssue(code=self.code, message=self.message, details=dict(self.details))


class PluginStartupError(FrameworkError):
    """插件启动失败（可执行文件路径无法解析或 spawn 失败）；只影响当前插件实例。"""

    def __init__(self, message: str, *, plugin: str = "", details: Dict[str, Any] | None = None) -> None:
        """创建 `PluginStartupError`。

        参数：
        - `message`：可读错误信息
        - `plugin`：插件名（写入 details.plugin）
        - `details`：结构化补充信息
        """

        merged = dict(details or {})
        if plugin:
            merged.setdefault("plugin", plugin)
        super().__init__(code="PLUGIN_STARTUP_FAILED", message=message, details=merged)


class MalformedParameters(FrameworkError, ValueError):
    """请求参数缺失或类型错误（在执行任何动作之前校验失败）。"""

    error_kind = "malformed_params"

    def __init__(self, method: str, message: str) -> None:
        """创建 `MalformedParameters`。

        参数：
        - `method`：原始方法名
        - `message`：校验失败原因
        """

        super().__init__(code="MALFORMED_PARAMETERS", message=message, details={"method": method})
        self.method = method


class OutOfRange(FrameworkError, IndexError):
    """行号越界（index >= line_count）。"""

    error_kind = "out_of_range"

    def __init__(self, index: int, line_count: int) -> None:
        """创建 `OutOfRange`。

        参数：
        - `index`：请求的行号
        - `line_count`：当前总行数
        """

        super().__init__(
            code="OUT_OF_RANGE",
            message=f"line {index} out of range (line_count={line_count})",
            details={"index": index, "line_count": line_count},
        )
        self.index = index
        self.line_count = line_count


class UnknownMethod(FrameworkError):
    """未识别的方法名（仅记录日志，不回复对端）。"""

    error_kind = "unknown_method"

    def __init__(self, method: str) -> None:
        """创建 `UnknownMethod`。"""

        super().__init__(code="UNKNOWN_METHOD", message=f"unknown plugin method: {method}", details={"method": method})
        self.method = method


class ChannelClosed(FrameworkError):
    """RPC 通道已关闭（EOF / broken pipe / 显式 close）。"""

    def __init__(self, message: str = "rpc channel closed") -> None:
        """创建 `ChannelClosed`。"""

        super().__init__(code="CHANNEL_CLOSED", message=message)


class ProcessExited(FrameworkError):
    """插件子进程已退出（携带退出状态摘要）。"""

    def __init__(self, plugin: str, status: str) -> None:
        """创建 `ProcessExited`。

        参数：
        - `plugin`：插件名
        - `status`：退出状态的可读摘要
        """

        super().__init__(
            code="PROCESS_EXITED",
            message=f"plugin {plugin} exited: {status}",
            details={"plugin": plugin, "status": status},
        )


class RpcRemoteError(FrameworkError):
    """host 主动发起的调用收到对端 error 回复。"""

    def __init__(self, method: str, error: Any) -> None:
        """创建 `RpcRemoteError`。

        参数：
        - `method`：host 调用的方法名
        - `error`：对端返回的 error 字段（原样保留）
        """

        super().__init__(
            code="RPC_REMOTE_ERROR",
            message=f"remote error for {method}: {error}",
            details={"method": method, "error": error},
        )
        self.error = error
