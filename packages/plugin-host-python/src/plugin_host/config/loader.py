"""
配置加载器（YAML）。

设计目标：
- 支持加载多个 YAML，并按顺序做深度合并（后者覆盖前者；list 整体覆盖）；
- 使用 pydantic 做 schema 校验；默认拒绝未知字段（避免拼写错误被静默吞掉）。
"""

from __future__ import annotations

import re
from copy import deepcopy
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Any, Dict, Iterable, List, Literal, Mapping, MutableMapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from plugin_host.config.defaults import load_default_config_dict

_PLUGIN_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")


def _deep_merge(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> MutableMapping[str, Any]:
    """
    深度合并两个 dict（overlay 覆盖 base）。

    合并规则：
    - dict + dict：递归合并
    - 其它类型（含 list）：overlay 直接覆盖
    """

    for key, overlay_value in overlay.items():
        if key in base and isinstance(base[key], dict) and isinstance(overlay_value, Mapping):
            _deep_merge(base[key], overlay_value)  # type: ignore[arg-type]
            continue
        base[key] = deepcopy(overlay_value)
    return base


class HostConfig(BaseModel):
    """host 自身相关配置。"""

    model_config = ConfigDict(extra="forbid")

    binary_dir: Optional[str] = None


class SupervisorConfig(BaseModel):
    """进程监管相关超时。"""

    model_config = ConfigDict(extra="forbid")

    exit_wait_timeout_sec: float = Field(default=10.0, gt=0)
    stop_timeout_sec: float = Field(default=2.0, gt=0)


class RpcConfig(BaseModel):
    """RPC 通道参数。"""

    model_config = ConfigDict(extra="forbid")

    max_frame_bytes: int = Field(default=1024 * 1024, ge=1024)


class PluginEntryConfig(BaseModel):
    """
    单个插件条目。

    字段：
    - name：插件名（日志/报告用；全局唯一）
    - path：相对 host 可执行文件目录的路径（不允许绝对路径）
    - interpreter：可选的解释器 argv 前缀（为空时直接执行 path）
    - env：追加到子进程环境的变量
    - enabled：是否启动
    """

    model_config = ConfigDict(extra="forbid")

    name: str
    path: str
    interpreter: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    enabled: bool = True

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        """插件名只允许字母数字与 `_.-`。"""

        if not _PLUGIN_NAME_RE.match(v):
            raise ValueError(f"invalid plugin name: {v!r}")
        return v

    @field_validator("path")
    @classmethod
    def _check_path(cls, v: str) -> str:
        """path 必须是非空相对路径。"""

        s = str(v).strip()
        if not s:
            raise ValueError("plugin path must not be empty")
        if PurePosixPath(s).is_absolute() or PureWindowsPath(s).is_absolute():
            raise ValueError("plugin path must be relative to the host binary directory")
        return s


class PluginHostConfig(BaseModel):
    """plugin host 配置根。"""

    model_config = ConfigDict(extra="forbid")

    config_version: Literal[1] = 1
    host: HostConfig = Field(default_factory=HostConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    rpc: RpcConfig = Field(default_factory=RpcConfig)
    plugins: List[PluginEntryConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_unique_names(self) -> "PluginHostConfig":
        """插件名必须唯一。"""

        seen: set[str] = set()
        for p in self.plugins:
            if p.name in seen:
                raise ValueError(f"duplicate plugin name: {p.name}")
            seen.add(p.name)
        return self

    def enabled_plugins(self) -> List[PluginEntryConfig]:
        """返回 enabled=true 的插件条目（保序）。"""

        return [p for p in self.plugins if p.enabled]


def load_config_dicts(overlays: Iterable[Mapping[str, Any]], *, include_defaults: bool = True) -> PluginHostConfig:
    """
    合并多个配置 dict 并校验。

    参数：
    - overlays：按顺序合并的 dict（后者覆盖前者）
    - include_defaults：是否以内置 default.yaml 作为最底层
    """

    merged: Dict[str, Any] = load_default_config_dict() if include_defaults else {}
    for overlay in overlays:
        _deep_merge(merged, overlay)
    return PluginHostConfig.model_validate(merged)


def load_config(paths: Iterable[Path], *, include_defaults: bool = True) -> PluginHostConfig:
    """
    读取多个 YAML 文件并合并校验。

    异常：
    - ValueError：YAML 语法错误，或根节点不是 mapping
    - pydantic.ValidationError：schema 校验失败
    """

    dicts: List[Dict[str, Any]] = []
    for p in paths:
        try:
            obj = yaml.safe_load(Path(p).read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"invalid yaml in {p}: {e}") from e
        if not isinstance(obj, dict):
            raise ValueError(f"config root must be a mapping: {p}")
        dicts.append(obj)
    return load_config_dicts(dicts, include_defaults=include_defaults)
