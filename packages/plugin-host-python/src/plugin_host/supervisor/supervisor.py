"""
ProcessSupervisor：插件子进程的启动、握手、dispatch 线程与退出报告。

流程（每个插件一个 supervisor）：
1) `start()`：解析可执行文件路径（相对 host 可执行文件目录），以 stdin/stdout 管道、stderr 继承的方式 spawn，
   立即返回 `PluginHandle`；失败只记录日志（PluginStartupError）并把插件标记为 exited；
2) dispatch 线程：构造 RpcPeer → 发送 fire-and-forget `ping`（params=null，不等待回复）→
   `on_plugin_connect(writer)` → 阻塞 receive loop，逐条交给 RequestDispatcher；
3) 通道关闭后：注销出站句柄，等待子进程退出（有上限，超时 kill），记录退出状态；exited 只观察一次。

约束：
- 不做自动重启；
- 锁纪律由 dispatcher 保证：握手/回复等管道 I/O 均不在 EditorState 锁内进行。
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from plugin_host.config.loader import PluginEntryConfig, PluginHostConfig, RpcConfig, SupervisorConfig
from plugin_host.core.errors import ChannelClosed, PluginStartupError, ProcessExited
from plugin_host.dispatch.dispatcher import RequestDispatcher
from plugin_host.editor.state import EditorStateHandle
from plugin_host.rpc.peer import RpcPeer
from plugin_host.supervisor.process import ExitStatus, PluginLifecycle, PluginProcess

logger = logging.getLogger(__name__)

LIVENESS_PROBE_METHOD = "ping"


def resolve_host_binary_dir(override: Optional[str | Path] = None) -> Path:
    """
    返回 host 自身可执行文件所在目录（插件路径的解析基准）。

    参数：
    - override：显式目录（来自配置/CLI），优先使用

    说明：
    - 默认取 `sys.argv[0]`（启动脚本/入口可执行文件）所在目录；
    - argv[0] 不可用（例如 `python -c`）时退化为解释器所在目录。
    """

    if override:
        return Path(override).expanduser().resolve()
    argv0 = sys.argv[0] if sys.argv else ""
    if argv0 and argv0 not in {"-c", "-m"}:
        p = Path(argv0)
        if p.exists():
            return p.resolve().parent
    return Path(sys.executable).resolve().parent


def resolve_plugin_path(entry: PluginEntryConfig, binary_dir: Path) -> Path:
    """
    把插件条目解析为绝对路径并做可执行性检查。

    异常：
    - PluginStartupError：文件不存在，或无解释器前缀时不可执行
    """

    path = (Path(binary_dir) / entry.path).resolve()
    if not path.is_file():
        raise PluginStartupError(f"plugin executable not found: {path}", plugin=entry.name, details={"path": str(path)})
    if not entry.interpreter and not os.access(path, os.X_OK):
        raise PluginStartupError(f"plugin file is not executable: {path}", plugin=entry.name, details={"path": str(path)})
    return path


class PluginHandle:
    """
    `start()` 的返回值：插件 dispatch 任务的可观察句柄。

    说明：
    - `done` 在插件进入 exited 时置位（包括启动失败）；
    - `wait()` 可带超时，不会无限阻塞调用方。
    """

    def __init__(self, supervisor: "ProcessSupervisor") -> None:
        """绑定 supervisor。"""

        self._supervisor = supervisor

    @property
    def name(self) -> str:
        """插件名。"""

        return self._supervisor.process.name

    @property
    def process(self) -> PluginProcess:
        """生命周期记录。"""

        return self._supervisor.process

    @property
    def state(self) -> PluginLifecycle:
        """当前生命周期状态。"""

        return self._supervisor.process.state

    @property
    def exit_status(self) -> Optional[ExitStatus]:
        """退出状态（未退出时为 None）。"""

        return self._supervisor.process.exit_status

    @property
    def done(self) -> threading.Event:
        """完成信号。"""

        return self._supervisor.process.done

    @property
    def dispatcher(self) -> Optional[RequestDispatcher]:
        """dispatch 线程使用的派发器（连接前为 None）。"""

        return self._supervisor.dispatcher

    def wait(self, timeout: Optional[float] = None) -> bool:
        """等待插件退出；返回是否已退出。"""

        return self.done.wait(timeout)

    def stop(self, timeout: Optional[float] = None) -> None:
        """请求停止插件（见 `ProcessSupervisor.stop`）。"""

        self._supervisor.stop(timeout)


class ProcessSupervisor:
    """
    单个插件子进程的监管者。

    参数：
    - handle：共享 EditorStateHandle
    - entry：插件条目（name/path/interpreter/env）
    - binary_dir：插件路径解析基准；None 时使用 `resolve_host_binary_dir()`
    - supervisor_config/rpc_config：超时与帧上限
    """

    def __init__(
        self,
        handle: EditorStateHandle,
        entry: PluginEntryConfig,
        *,
        binary_dir: Optional[str | Path] = None,
        supervisor_config: Optional[SupervisorConfig] = None,
        rpc_config: Optional[RpcConfig] = None,
    ) -> None:
        """创建 supervisor（不启动进程）。"""

        self._handle = handle
        self._entry = entry
        self._binary_dir = binary_dir
        self._sup_cfg = supervisor_config or SupervisorConfig()
        self._rpc_cfg = rpc_config or RpcConfig()
        self.process = PluginProcess(entry.name)
        self.dispatcher: Optional[RequestDispatcher] = None
        self._proc: Optional[subprocess.Popen[bytes]] = None
        self._thread: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()
        self._plugin_handle = PluginHandle(self)

    @property
    def handle(self) -> PluginHandle:
        """本插件的句柄（start 前也可获取）。"""

        return self._plugin_handle

    def _report_exit(self, status: ExitStatus) -> None:
        """进入 exited 并记录日志（重复调用只报告第一次）。"""

        if not self.process.mark_exited(status):
            return
        summary = ProcessExited(self.process.name, status.describe())
        if status.ok:
            logger.info("%s", summary)
        else:
            logger.warning("%s", summary)

    def _fail_startup(self, err: PluginStartupError) -> None:
        """记录启动失败，插件直接进入 exited。"""

        logger.error("plugin %s failed to start: %s", self._entry.name, err)
        self._report_exit(ExitStatus.startup_error(err.message))

    def _spawn(self) -> subprocess.Popen[bytes]:
        """解析路径并 spawn 子进程（stdin/stdout 为管道，stderr 继承）。"""

        binary_dir = resolve_host_binary_dir(self._binary_dir)
        path = resolve_plugin_path(self._entry, binary_dir)
        argv = [*self._entry.interpreter, str(path)]
        env = dict(os.environ)
        env.update({str(k): str(v) for k, v in self._entry.env.items()})
        try:
            return subprocess.Popen(  # noqa: S603
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=None,
                env=env,
                close_fds=True,
            )
        except (OSError, ValueError) as e:
            raise PluginStartupError(f"failed to spawn {path}: {e}", plugin=self._entry.name, details={"argv": argv}) from e

    def start(self) -> PluginHandle:
        """
        启动插件并立即返回句柄。

        说明：
        - 不向调用方抛出启动失败；失败只记录日志并使句柄进入 exited；
        - 重复调用返回同一句柄（每个插件至多一个 dispatch 线程）。
        """

        with self._start_lock:
            if self.process.state != PluginLifecycle.NOT_STARTED:
                logger.warning("plugin %s already started", self._entry.name)
                return self._plugin_handle
            try:
                proc = self._spawn()
            except PluginStartupError as e:
                self._fail_startup(e)
                return self._plugin_handle

            self._proc = proc
            self.process.pid = proc.pid
            self.process.transition(PluginLifecycle.SPAWNED)
            logger.info("plugin %s spawned (pid=%s)", self._entry.name, proc.pid)

            thread = threading.Thread(target=self._run, args=(proc,), name=f"plugin-{self._entry.name}", daemon=True)
            try:
                thread.start()
            except RuntimeError as e:
                proc.kill()
                self._report_exit(self._wait_for_exit(proc))
                logger.error("plugin %s: could not start dispatch thread: %s", self._entry.name, e)
                return self._plugin_handle
            self._thread = thread
            return self._plugin_handle

    def _run(self, proc: subprocess.Popen[bytes]) -> None:
        """dispatch 线程主体：握手、登记、receive loop、退出报告。"""

        writer = None
        connected = False
        try:
            if proc.stdout is None or proc.stdin is None:
                raise PluginStartupError("plugin pipes are not available", plugin=self._entry.name)
            peer = RpcPeer(proc.stdout, proc.stdin, max_frame_bytes=self._rpc_cfg.max_frame_bytes)
            writer = peer.get_writer()
            self.process.writer = writer
            try:
                writer.send_rpc_async(LIVENESS_PROBE_METHOD, None)
            except ChannelClosed as e:
                logger.warning("plugin %s: liveness probe not delivered: %s", self._entry.name, e)
            self.process.transition(PluginLifecycle.CONNECTED)
            self._handle.on_plugin_connect(writer)
            connected = True
            logger.info("plugin %s connected", self._entry.name)

            self.dispatcher = RequestDispatcher(self._handle, plugin_name=self._entry.name)
            dispatcher = self.dispatcher
            self.process.transition(PluginLifecycle.DISPATCHING)
            peer.mainloop(lambda method, params: dispatcher.dispatch(method, params).reply())
        except PluginStartupError as e:
            proc.kill()
            self._fail_startup(e)
        except Exception:
            logger.exception("plugin %s: dispatch thread failed", self._entry.name)
        finally:
            if connected and writer is not None:
                self._handle.on_plugin_disconnect(writer)
            if writer is not None:
                writer.close()
            if proc.stdout is not None:
                try:
                    proc.stdout.close()
                except OSError as e:
                    logger.debug("closing plugin stdout failed: %s", e)
            self._report_exit(self._wait_for_exit(proc))

    def _wait_for_exit(self, proc: subprocess.Popen[bytes]) -> ExitStatus:
        """等待子进程退出（有上限；超时 kill 后再等）。"""

        timeout = self._sup_cfg.exit_wait_timeout_sec
        try:
            try:
                rc = proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning("plugin %s did not exit within %.1fs after channel close; killing", self._entry.name, timeout)
                proc.kill()
                rc = proc.wait(timeout=timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            return ExitStatus.wait_error(str(e))
        return ExitStatus.from_returncode(rc)

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        停止插件：关闭 stdin → terminate → 超时 kill。

        说明：
        - 关闭 stdin 不阻塞：即使 dispatch 线程正卡在向一个不读 stdin 的插件写回复，也会继续 terminate/kill；
        - 不等待 dispatch 线程；退出报告仍由 dispatch 线程完成（可用 `PluginHandle.wait` 观察）；
        - 对未启动/启动失败/已退出的插件为 no-op。
        """

        proc = self._proc
        if proc is None or self.process.state == PluginLifecycle.EXITED:
            return
        grace = self._sup_cfg.stop_timeout_sec if timeout is None else float(timeout)
        writer = self.process.writer
        if writer is not None:
            writer.close()
        if proc.poll() is not None:
            return
        try:
            proc.terminate()
            proc.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            logger.warning("plugin %s ignored terminate; killing", self._entry.name)
            proc.kill()
        except OSError as e:
            logger.warning("plugin %s: stop failed: %s", self._entry.name, e)


class PluginHost:
    """
    按配置启动所有 enabled 插件；单个插件失败不影响其它插件与 host。

    参数：
    - handle：共享 EditorStateHandle
    - config：PluginHostConfig
    - binary_dir：覆盖 `config.host.binary_dir`
    """

    def __init__(self, handle: EditorStateHandle, config: PluginHostConfig, *, binary_dir: Optional[str | Path] = None) -> None:
        """创建 host（不启动插件）。"""

        self._handle = handle
        self._config = config
        self._binary_dir = binary_dir if binary_dir is not None else config.host.binary_dir
        self._supervisors: List[ProcessSupervisor] = []

    @property
    def handles(self) -> List[PluginHandle]:
        """已启动插件的句柄（保序）。"""

        return [s.handle for s in self._supervisors]

    def start_all(self) -> List[PluginHandle]:
        """启动全部 enabled 插件，立即返回句柄列表。"""

        out: List[PluginHandle] = []
        for entry in self._config.enabled_plugins():
            sup = ProcessSupervisor(
                self._handle,
                entry,
                binary_dir=self._binary_dir,
                supervisor_config=self._config.supervisor,
                rpc_config=self._config.rpc,
            )
            self._supervisors.append(sup)
            out.append(sup.start())
        return out

    def wait_all(self, timeout: Optional[float] = None) -> bool:
        """等待全部插件退出；返回是否在超时前全部退出。"""

        deadline = None if timeout is None else time.monotonic() + float(timeout)
        for sup in self._supervisors:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if not sup.process.done.wait(remaining):
                return False
        return True

    def stop_all(self, timeout: Optional[float] = None) -> None:
        """停止全部插件（逐个 stop，不等待 dispatch 线程）。"""

        for sup in self._supervisors:
            sup.stop(timeout)

    def statuses(self) -> Dict[str, Dict[str, Any]]:
        """返回每个插件的状态摘要（插件名 -> dict）。"""

        out: Dict[str, Dict[str, Any]] = {}
        for sup in self._supervisors:
            item = sup.process.to_dict()
            if sup.dispatcher is not None:
                item["dispatch_stats"] = sup.dispatcher.stats.snapshot()
            out[sup.process.name] = item
        return out
