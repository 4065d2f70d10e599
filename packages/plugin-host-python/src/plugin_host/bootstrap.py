"""
Bootstrap Layer（配置发现 / 来源追踪）。

设计目标：
- 核心模块无隐式 I/O：EditorStateHandle/ProcessSupervisor 不读取环境变量；
- CLI/嵌入方通过本模块统一解析 overlays 与 host binary 目录，并能追踪“值来自哪里”。

环境变量：
- `PLUGIN_HOST_CONFIG`：overlay 路径列表（`,` 或 `;` 分隔；相对路径相对 base_dir）
- `PLUGIN_HOST_BINARY_DIR`：覆盖插件路径解析基准目录
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from plugin_host.config.loader import PluginHostConfig, load_config

ENV_CONFIG = "PLUGIN_HOST_CONFIG"
ENV_BINARY_DIR = "PLUGIN_HOST_BINARY_DIR"


def _get_env_nonempty(key: str, *, env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """
    读取 env 并返回非空白字符串（否则视为未设置）。

    参数：
    - key：环境变量名
    """

    v = (env if env is not None else os.environ).get(key)
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _split_paths(raw: str) -> List[str]:
    """将逗号/分号分隔的路径串切分为片段列表（去空白、去空项、保序）。"""

    parts: List[str] = []
    for chunk in raw.replace(";", ",").split(","):
        s = chunk.strip()
        if s:
            parts.append(s)
    return parts


def _resolve_path(raw: str, base_dir: Path) -> Path:
    """相对路径相对 base_dir 解析为绝对路径。"""

    p = Path(raw).expanduser()
    if not p.is_absolute():
        p = base_dir / p
    return p.resolve()


@dataclass(frozen=True)
class EffectiveConfig:
    """
    解析后的有效配置与来源信息。

    字段：
    - config：合并校验后的配置
    - overlay_paths：实际加载的 overlay（保序）
    - binary_dir：最终使用的 binary 目录覆盖值（None 表示使用 host 自身目录）
    - sources：关键字段来源（`cli` / `env:<NAME>` / `config` / `default`）
    """

    config: PluginHostConfig
    overlay_paths: List[Path]
    binary_dir: Optional[str]
    sources: Dict[str, str]


def discover_overlay_paths(
    *,
    cli_paths: Sequence[str] = (),
    base_dir: Path,
    env: Optional[Mapping[str, str]] = None,
) -> List[Path]:
    """
    按顺序返回 overlay 路径：env 中的在前，CLI 传入的在后（CLI 覆盖 env）。

    参数：
    - cli_paths：CLI `--config` 传入的路径
    - base_dir：相对路径锚点
    - env：环境变量映射（默认 os.environ）
    """

    out: List[Path] = []
    raw = _get_env_nonempty(ENV_CONFIG, env=env)
    if raw:
        out.extend(_resolve_path(p, base_dir) for p in _split_paths(raw))
    out.extend(_resolve_path(p, base_dir) for p in cli_paths)
    return out


def load_effective_config(
    *,
    cli_paths: Sequence[str] = (),
    cli_binary_dir: Optional[str] = None,
    base_dir: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> EffectiveConfig:
    """
    加载有效配置（default.yaml + env overlays + CLI overlays），并解析 binary 目录覆盖值。

    优先级（binary_dir）：CLI > env > config > host 自身目录。

    异常：
    - FileNotFoundError：overlay 不存在
    - ValueError / pydantic.ValidationError：内容非法
    """

    base = (base_dir or Path.cwd()).resolve()
    paths = discover_overlay_paths(cli_paths=cli_paths, base_dir=base, env=env)
    for p in paths:
        if not p.exists():
            raise FileNotFoundError(f"config overlay not found: {p}")
    config = load_config(paths)

    sources: Dict[str, str] = {}
    binary_dir: Optional[str] = None
    env_binary_dir = _get_env_nonempty(ENV_BINARY_DIR, env=env)
    if cli_binary_dir:
        binary_dir = str(_resolve_path(cli_binary_dir, base))
        sources["host.binary_dir"] = "cli"
    elif env_binary_dir:
        binary_dir = str(_resolve_path(env_binary_dir, base))
        sources["host.binary_dir"] = f"env:{ENV_BINARY_DIR}"
    elif config.host.binary_dir:
        binary_dir = str(_resolve_path(config.host.binary_dir, base))
        sources["host.binary_dir"] = "config"
    else:
        sources["host.binary_dir"] = "default"
    return EffectiveConfig(config=config, overlay_paths=paths, binary_dir=binary_dir, sources=sources)
