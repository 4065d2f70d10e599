"""配置（YAML overlay + pydantic 校验）。"""

from __future__ import annotations

from plugin_host.config.defaults import load_default_config_dict
from plugin_host.config.loader import PluginEntryConfig, PluginHostConfig, load_config, load_config_dicts

__all__ = ["PluginEntryConfig", "PluginHostConfig", "load_config", "load_config_dicts", "load_default_config_dict"]
