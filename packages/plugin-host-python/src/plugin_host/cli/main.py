"""
plugin host CLI（run / config）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）；
- stdout 输出机器可读 JSON；日志写 stderr（插件子进程的 stderr 也直接继承到这里）。

退出码：
- 0：成功（run：全部插件正常退出）
- 1：run 完成但存在插件非正常退出/启动失败/超时
- 2：参数或配置错误
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from plugin_host import bootstrap
from plugin_host.core.errors import FrameworkIssue
from plugin_host.editor.state import EditorState, EditorStateHandle
from plugin_host.supervisor.supervisor import PluginHost


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool) -> None:
    """
    将 dict 输出为 JSON 到 stdout（末尾包含换行）。

    参数：
    - obj：待输出对象（必须可 JSON dumps）
    - pretty：是否启用 pretty-print（indent=2）
    """

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text)


def _issue_payload(issue: FrameworkIssue) -> Dict[str, Any]:
    """FrameworkIssue -> JSON dict。"""

    return {"code": issue.code, "message": issue.message, "details": dict(issue.details)}


def _config_issue(exc: Exception) -> FrameworkIssue:
    """把配置加载异常映射为结构化问题。"""

    if isinstance(exc, FileNotFoundError):
        return FrameworkIssue(code="CLI_OVERLAY_NOT_FOUND", message="Overlay config not found.", details={"reason": str(exc)})
    if isinstance(exc, ValidationError):
        return FrameworkIssue(
            code="CLI_CONFIG_INVALID",
            message="Config validation failed.",
            details={"errors": [str(e.get("msg", "")) for e in exc.errors()]},
        )
    return FrameworkIssue(code="CLI_CONFIG_INVALID", message="Config load failed.", details={"reason": str(exc)})


def _load_effective(args: argparse.Namespace) -> tuple[Optional[bootstrap.EffectiveConfig], Optional[FrameworkIssue]]:
    """加载有效配置；失败时返回 (None, issue)。"""

    try:
        eff = bootstrap.load_effective_config(
            cli_paths=list(args.config or []),
            cli_binary_dir=getattr(args, "binary_dir", None),
        )
    except (OSError, ValueError) as exc:
        return None, _config_issue(exc)
    return eff, None


def _build_parser() -> argparse.ArgumentParser:
    """构建 argparse 解析器。"""

    parser = argparse.ArgumentParser(prog="plugin-host", description="Editor plugin host")
    root_sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        """为子命令添加公共参数。"""

        p.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")
        p.add_argument("--log-level", default="WARNING", help="Logging level for stderr (default: WARNING).")

    run = root_sub.add_parser("run", help="Load a document, run plugins against it, report results")
    _add_common_flags(run)
    run.add_argument("--file", required=True, help="Document to load (utf-8).")
    run.add_argument("--binary-dir", default=None, help="Directory plugin paths are resolved against.")
    run.add_argument("--timeout", type=float, default=30.0, help="Seconds to wait for plugins before stopping them.")

    cfg = root_sub.add_parser("config", help="Print the effective merged config")
    _add_common_flags(cfg)
    cfg.add_argument("--binary-dir", default=None, help="Directory plugin paths are resolved against.")
    return parser


def _handle_config(args: argparse.Namespace) -> int:
    """`config` 子命令：输出有效配置与来源。"""

    eff, issue = _load_effective(args)
    if eff is None:
        _dump_json_to_stdout({"issues": [_issue_payload(issue)]}, pretty=bool(args.pretty))  # type: ignore[arg-type]
        return 2
    _dump_json_to_stdout(
        {
            "config": eff.config.model_dump(),
            "overlay_paths": [str(p) for p in eff.overlay_paths],
            "binary_dir": eff.binary_dir,
            "sources": eff.sources,
        },
        pretty=bool(args.pretty),
    )
    return 0


def _handle_run(args: argparse.Namespace) -> int:
    """`run` 子命令：加载文档 → 启动插件 → 等待退出（超时 stop）→ 输出报告。"""

    eff, issue = _load_effective(args)
    if eff is None:
        _dump_json_to_stdout({"issues": [_issue_payload(issue)]}, pretty=bool(args.pretty))  # type: ignore[arg-type]
        return 2

    doc_path = Path(args.file).expanduser()
    try:
        text = doc_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        bad = FrameworkIssue(code="CLI_FILE_UNREADABLE", message="Document could not be read.", details={"path": str(doc_path), "reason": str(exc)})
        _dump_json_to_stdout({"issues": [_issue_payload(bad)]}, pretty=bool(args.pretty))
        return 2

    handle = EditorStateHandle(EditorState.from_text(text))
    host = PluginHost(handle, eff.config, binary_dir=eff.binary_dir)
    host.start_all()
    finished = host.wait_all(timeout=float(args.timeout))
    if not finished:
        host.stop_all()
        host.wait_all(timeout=eff.config.supervisor.exit_wait_timeout_sec)

    statuses = host.statuses()
    snap = handle.snapshot()
    ok = finished and all((s.get("exit_status") or {}).get("kind") == "success" for s in statuses.values())
    report = {
        "ok": ok,
        "timed_out": not finished,
        "plugins": statuses,
        "document": {
            "path": str(doc_path),
            "line_count": len(snap.lines),
            "revision": snap.revision,
            "styles": {str(i): spans for i, spans in snap.styled_lines().items()},
        },
    }
    _dump_json_to_stdout(report, pretty=bool(args.pretty))
    return 0 if ok else 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI 入口。"""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    level = getattr(logging, str(args.log_level).upper(), None)
    logging.basicConfig(
        level=level if isinstance(level, int) else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    handlers: Dict[str, Any] = {"run": _handle_run, "config": _handle_config}
    handler = handlers.get(args.command)
    if handler is None:  # pragma: no cover
        _dump_json_to_stdout(
            {"issues": [{"code": "CLI_COMMAND_INVALID", "message": "Unknown command.", "details": {"command": args.command}}]},
            pretty=bool(getattr(args, "pretty", False)),
        )
        return 2
    return int(handler(args))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())


__all__: List[str] = ["main"]
