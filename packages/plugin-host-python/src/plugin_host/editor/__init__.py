"""Editor 共享状态（文档模型 + 锁纪律）。"""

from __future__ import annotations

from plugin_host.editor.state import EditorSnapshot, EditorState, EditorStateHandle, OutboundHandle, split_lines

__all__ = ["EditorSnapshot", "EditorState", "EditorStateHandle", "OutboundHandle", "split_lines"]
