from __future__ import annotations

import json
import os
import signal
import sys
import textwrap
import threading
import time
from pathlib import Path

import pytest

from plugin_host.config.loader import PluginEntryConfig, SupervisorConfig, load_config_dicts
from plugin_host.editor.state import EditorState, EditorStateHandle
from plugin_host.supervisor.process import ExitStatus, PluginLifecycle, PluginProcess
from plugin_host.supervisor.supervisor import PluginHost, ProcessSupervisor, resolve_host_binary_dir, resolve_plugin_path

_CONVERSATION_PLUGIN = textwrap.dedent(
    """
    import json
    import os
    import sys


    def send(obj):
        sys.stdout.write(json.dumps(obj) + "\\n")
        sys.stdout.flush()


    def recv():
        return json.loads(sys.stdin.readline())


    report = {"handshake": recv()}

    send({"id": 1, "method": "n_lines", "params": None})
    report["n_lines"] = recv()
    lines = []
    for i in range(report["n_lines"]["result"]):
        send({"id": 10 + i, "method": "get_line", "params": {"line": i}})
        lines.append(recv())
    report["lines"] = lines

    send({"id": 20, "method": "get_line", "params": {"line": 99}})
    report["out_of_range"] = recv()

    send({"id": 21, "method": "get_line", "params": {"line": "nope"}})
    report["malformed"] = recv()

    send({"id": 30, "method": "frobnicate", "params": {}})
    send({"method": "set_line_fg_spans", "params": {"line": 0, "spans": [{"start": 0, "end": 5, "attr": "emphasis"}]}})
    send({"id": 31, "method": "n_lines", "params": None})
    report["after_unknown"] = recv()

    with open(os.environ["PLUGIN_REPORT"], "w", encoding="utf-8") as f:
        json.dump(report, f)
    sys.exit(int(os.environ.get("PLUGIN_EXIT_CODE", "0")))
    """
)


def _write_plugin(dir_path: Path, name: str, body: str) -> str:
    """写入插件脚本，返回相对 dir_path 的路径。"""

    p = dir_path / "python" / name
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(body, encoding="utf-8")
    return f"python/{name}"


def _entry(name: str, path: str, **kw) -> PluginEntryConfig:  # type: ignore[no-untyped-def]
    """以当前解释器运行脚本的插件条目。"""

    return PluginEntryConfig(name=name, path=path, interpreter=[sys.executable], **kw)


def _supervisor(handle: EditorStateHandle, entry: PluginEntryConfig, binary_dir: Path) -> ProcessSupervisor:
    """构造 supervisor（缩短超时）。"""

    return ProcessSupervisor(
        handle,
        entry,
        binary_dir=binary_dir,
        supervisor_config=SupervisorConfig(exit_wait_timeout_sec=10.0, stop_timeout_sec=2.0),
    )


def test_plugin_conversation_end_to_end(tmp_path: Path) -> None:
    rel = _write_plugin(tmp_path, "plugin.py", _CONVERSATION_PLUGIN)
    report_path = tmp_path / "report.json"
    handle = EditorStateHandle(EditorState(["hello", "world"]))
    sup = _supervisor(handle, _entry("python", rel, env={"PLUGIN_REPORT": str(report_path)}), tmp_path)

    ph = sup.start()
    assert ph.wait(30), "plugin did not finish"

    report = json.loads(report_path.read_text(encoding="utf-8"))
    assert report["handshake"] == {"method": "ping", "params": None}
    assert report["n_lines"] == {"id": 1, "result": 2}
    assert [x["result"] for x in report["lines"]] == ["hello", "world"]
    assert report["out_of_range"]["id"] == 20
    assert report["out_of_range"]["error"]["error_kind"] == "out_of_range"
    assert report["malformed"]["error"]["error_kind"] == "malformed_params"
    # 未知方法不回复：下一条回复属于 id=31
    assert report["after_unknown"] == {"id": 31, "result": 2}

    assert handle.line_styles(0) == [{"start": 0, "end": 5, "attr": "emphasis"}]
    assert ph.state == PluginLifecycle.EXITED
    assert ph.exit_status == ExitStatus(kind="success", code=0)
    assert handle.connected_peers() == []
    assert ph.dispatcher is not None
    assert ph.dispatcher.stats.snapshot()["unknown_method"] == 1


def test_missing_binary_is_logged_and_start_returns(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    handle = EditorStateHandle(EditorState(["a"]))
    sup = _supervisor(handle, _entry("ghost", "python/missing.py"), tmp_path)

    with caplog.at_level("ERROR"):
        ph = sup.start()

    assert ph.done.is_set()
    assert ph.state == PluginLifecycle.EXITED
    assert ph.exit_status is not None and ph.exit_status.kind == "startup_error"
    assert "PLUGIN_STARTUP_FAILED" in caplog.text
    # host 其余功能不受影响
    assert handle.get_line(0) == "a"
    sup.stop()


@pytest.mark.skipif(os.name == "nt", reason="posix exec bits only")
def test_non_executable_without_interpreter_fails_startup(tmp_path: Path) -> None:
    rel = _write_plugin(tmp_path, "plain.py", "print('hi')\n")
    entry = PluginEntryConfig(name="plain", path=rel)
    (tmp_path / rel).chmod(0o644)
    sup = _supervisor(EditorStateHandle(), entry, tmp_path)
    ph = sup.start()
    assert ph.exit_status is not None
    assert ph.exit_status.kind == "startup_error"
    assert "not executable" in ph.exit_status.message


def test_one_failing_plugin_does_not_block_others(tmp_path: Path) -> None:
    rel = _write_plugin(tmp_path, "plugin.py", _CONVERSATION_PLUGIN)
    cfg = load_config_dicts(
        [
            {
                "plugins": [
                    {"name": "ghost", "path": "python/missing.py", "interpreter": [sys.executable]},
                    {
                        "name": "good",
                        "path": rel,
                        "interpreter": [sys.executable],
                        "env": {"PLUGIN_REPORT": str(tmp_path / "good.json")},
                    },
                    {"name": "off", "path": rel, "enabled": False},
                ]
            }
        ]
    )
    handle = EditorStateHandle(EditorState(["hello", "world"]))
    host = PluginHost(handle, cfg, binary_dir=tmp_path)

    handles = host.start_all()
    assert [h.name for h in handles] == ["ghost", "good"]
    assert host.wait_all(timeout=30)

    statuses = host.statuses()
    assert statuses["ghost"]["exit_status"]["kind"] == "startup_error"
    assert statuses["good"]["exit_status"]["kind"] == "success"
    assert statuses["good"]["dispatch_stats"]["ok"] >= 4
    assert handle.line_styles(0)[0]["attr"] == "emphasis"


def test_nonzero_exit_code_is_reported(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    rel = _write_plugin(tmp_path, "crash.py", "import sys\nsys.stdin.readline()\nsys.exit(3)\n")
    sup = _supervisor(EditorStateHandle(), _entry("crash", rel), tmp_path)
    with caplog.at_level("WARNING"):
        ph = sup.start()
        assert ph.wait(30)
    assert ph.exit_status == ExitStatus(kind="exit_code", code=3)
    assert "plugin crash exited: exited with code 3" in caplog.text


@pytest.mark.skipif(os.name == "nt", reason="posix signals only")
def test_signal_termination_is_reported(tmp_path: Path) -> None:
    body = "import os, signal, sys\nsys.stdin.readline()\nos.kill(os.getpid(), signal.SIGKILL)\n"
    rel = _write_plugin(tmp_path, "killed.py", body)
    sup = _supervisor(EditorStateHandle(), _entry("killed", rel), tmp_path)
    ph = sup.start()
    assert ph.wait(30)
    assert ph.exit_status is not None
    assert ph.exit_status.kind == "signal"
    assert ph.exit_status.signal == signal.SIGKILL


@pytest.mark.skipif(os.name == "nt", reason="posix signals only")
def test_stop_terminates_a_stuck_plugin(tmp_path: Path) -> None:
    rel = _write_plugin(tmp_path, "stuck.py", "import time\nwhile True:\n    time.sleep(0.1)\n")
    handle = EditorStateHandle()
    sup = _supervisor(handle, _entry("stuck", rel), tmp_path)
    ph = sup.start()
    assert not ph.wait(0.3)

    ph.stop(timeout=2.0)
    assert ph.wait(30)
    assert ph.exit_status is not None
    assert ph.exit_status.kind == "signal"
    assert handle.connected_peers() == []


def test_start_twice_returns_same_handle(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    rel = _write_plugin(tmp_path, "quick.py", "import sys\nsys.stdin.readline()\n")
    sup = _supervisor(EditorStateHandle(), _entry("quick", rel), tmp_path)
    first = sup.start()
    with caplog.at_level("WARNING"):
        second = sup.start()
    assert first is second
    assert "already started" in caplog.text
    assert first.wait(30)
    assert first.exit_status is not None and first.exit_status.ok


def test_process_exit_is_observed_once() -> None:
    proc = PluginProcess("p")
    proc.transition(PluginLifecycle.SPAWNED)
    assert proc.mark_exited(ExitStatus.from_returncode(0)) is True
    assert proc.mark_exited(ExitStatus.from_returncode(1)) is False
    assert proc.exit_status == ExitStatus(kind="success", code=0)
    assert proc.done.is_set()
    with pytest.raises(RuntimeError):
        proc.transition(PluginLifecycle.CONNECTED)


def test_lifecycle_rejects_skipping_states() -> None:
    proc = PluginProcess("p")
    with pytest.raises(RuntimeError):
        proc.transition(PluginLifecycle.DISPATCHING)
    with pytest.raises(RuntimeError):
        proc.transition(PluginLifecycle.EXITED)


@pytest.mark.parametrize(
    "rc,kind,text",
    [
        (0, "success", "exited successfully"),
        (2, "exit_code", "exited with code 2"),
        (-15, "signal", "killed by signal SIGTERM"),
    ],
)
def test_exit_status_from_returncode(rc: int, kind: str, text: str) -> None:
    st = ExitStatus.from_returncode(rc)
    assert st.kind == kind
    assert st.describe() == text
    assert st.to_dict()["kind"] == kind


def test_resolve_paths(tmp_path: Path) -> None:
    assert resolve_host_binary_dir(tmp_path) == tmp_path.resolve()
    assert resolve_host_binary_dir(None).is_dir()

    rel = _write_plugin(tmp_path, "ok.py", "")
    entry = _entry("ok", rel)
    assert resolve_plugin_path(entry, tmp_path) == (tmp_path / rel).resolve()


_FLOODING_PLUGIN = textwrap.dedent(
    """
    import json
    import sys
    import time

    for i in range(5000):
        sys.stdout.write(json.dumps({"id": i, "method": "get_line", "params": {"line": 0}}) + "\\n")
    sys.stdout.flush()
    while True:
        time.sleep(0.1)
    """
)


@pytest.mark.skipif(os.name == "nt", reason="posix signals only")
def test_stop_returns_while_replies_are_blocked_on_a_full_pipe(tmp_path: Path) -> None:
    rel = _write_plugin(tmp_path, "flood.py", _FLOODING_PLUGIN)
    handle = EditorStateHandle(EditorState(["x" * 4096 + "\n"]))
    sup = _supervisor(handle, _entry("flood", rel), tmp_path)
    ph = sup.start()

    # 等到 dispatch 线程开始回复（随后会卡在写满的 stdin 管道上）
    deadline = time.monotonic() + 15
    while time.monotonic() < deadline:
        d = ph.dispatcher
        if d is not None and d.stats.snapshot().get("ok", 0) > 0:
            break
        time.sleep(0.05)
    time.sleep(0.5)

    stopper = threading.Thread(target=ph.stop, args=(1.0,), daemon=True)
    stopper.start()
    stopper.join(10)
    assert not stopper.is_alive(), "stop() blocked on the dispatch thread's pending write"

    assert ph.wait(30)
    assert ph.exit_status is not None
    assert ph.exit_status.kind == "signal"
    assert handle.connected_peers() == []


class _PipelessProc:
    """没有 stdin/stdout 管道的假子进程。"""

    pid = 4242
    stdin = None
    stdout = None
    returncode = -9

    def __init__(self) -> None:
        self.killed = False

    def kill(self) -> None:
        """记录 kill。"""

        self.killed = True

    def poll(self) -> int:
        """已退出。"""

        return self.returncode

    def wait(self, timeout=None) -> int:  # type: ignore[no-untyped-def]
        """立即返回退出码。"""

        return self.returncode


def test_missing_pipes_are_reported_as_startup_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    rel = _write_plugin(tmp_path, "ok.py", "")
    fake = _PipelessProc()
    monkeypatch.setattr("plugin_host.supervisor.supervisor.subprocess.Popen", lambda *a, **kw: fake)

    sup = _supervisor(EditorStateHandle(), _entry("pipeless", rel), tmp_path)
    ph = sup.start()

    assert ph.wait(10)
    assert ph.exit_status is not None
    assert ph.exit_status.kind == "startup_error"
    assert "pipes" in ph.exit_status.message
    assert fake.killed is True
