from __future__ import annotations

import threading
from typing import Any, List

import pytest

from plugin_host.core.errors import ChannelClosed, OutOfRange
from plugin_host.editor.state import EditorState, EditorStateHandle


class _RecordingPeer:
    """记录 send_rpc_async 调用的出站句柄。"""

    def __init__(self, *, closed: bool = False) -> None:
        self.sent: List[Any] = []
        self.closed = closed

    def send_rpc_async(self, method: str, params: Any = None) -> None:
        """记录或模拟已关闭通道。"""

        if self.closed:
            raise ChannelClosed()
        self.sent.append((method, params))


def test_from_text_keeps_terminators_and_round_trips() -> None:
    text = "alpha\nbeta\r\ngamma"
    state = EditorState.from_text(text)
    assert state.line_count() == 3
    assert state.get_line(0) == "alpha\n"
    assert state.get_line(1) == "beta\r\n"
    assert state.get_line(2) == "gamma"
    assert state.text() == text


def test_empty_document_has_zero_lines() -> None:
    state = EditorState.from_text("")
    assert state.line_count() == 0
    with pytest.raises(OutOfRange):
        state.get_line(0)


@pytest.mark.parametrize("index", [-1, 3, 100])
def test_get_line_out_of_range(index: int) -> None:
    state = EditorState(["a", "b", "c"])
    with pytest.raises(OutOfRange) as ei:
        state.get_line(index)
    assert ei.value.line_count == 3
    assert ei.value.error_kind == "out_of_range"


def test_bool_index_is_rejected() -> None:
    state = EditorState(["a", "b"])
    with pytest.raises(OutOfRange):
        state.get_line(True)  # type: ignore[arg-type]


def test_set_line_styles_replaces_and_copies() -> None:
    state = EditorState(["x", "y"])
    spans = [{"start": 0, "end": 1, "fg": "red"}]
    state.set_line_styles(1, spans)
    spans[0]["fg"] = "blue"

    assert state.line_styles(1) == [{"start": 0, "end": 1, "fg": "red"}]
    assert state.line_styles(0) == []
    assert state.revision == 1

    state.set_line_styles(1, [])
    assert state.line_styles(1) == []
    assert state.revision == 2


def test_set_line_styles_out_of_range_leaves_state_untouched() -> None:
    state = EditorState(["only"])
    with pytest.raises(OutOfRange):
        state.set_line_styles(1, [{"start": 0, "end": 1}])
    assert state.revision == 0
    assert state.line_styles(0) == []


def test_host_edits_keep_styles_aligned() -> None:
    state = EditorState.from_text("a\nb\nc\n")
    state.set_line_styles(2, [{"start": 0, "end": 1}])

    state.insert_line(0, "new\n")
    assert state.line_count() == 4
    assert state.line_styles(3) == [{"start": 0, "end": 1}]

    state.delete_line(1)
    assert state.text() == "new\nb\nc\n"
    assert state.line_styles(2) == [{"start": 0, "end": 1}]

    state.replace_line(2, "C\n")
    assert state.line_styles(2) == []

    state.insert_line(state.line_count(), "tail")
    assert state.text().endswith("tail")
    with pytest.raises(OutOfRange):
        state.insert_line(state.line_count() + 1, "x")


def test_set_text_resets_styles() -> None:
    state = EditorState(["a\n"])
    state.set_line_styles(0, [{"start": 0, "end": 1}])
    state.set_text("one\ntwo\n")
    assert state.line_count() == 2
    assert state.line_styles(0) == []


def test_handle_gateway_and_snapshot() -> None:
    handle = EditorStateHandle(EditorState(["hello\n", "world\n"]))
    assert handle.line_count() == 2
    assert handle.get_line(1) == "world\n"

    handle.set_line_styles(0, [{"start": 0, "end": 5, "fg": 1}])
    snap = handle.snapshot()
    assert snap.text() == "hello\nworld\n"
    assert snap.styled_lines() == {0: [{"start": 0, "end": 5, "fg": 1}]}
    assert snap.revision == 1

    with pytest.raises(OutOfRange):
        handle.get_line(2)


def test_handle_lock_is_released_after_exception() -> None:
    handle = EditorStateHandle(EditorState(["a"]))
    with pytest.raises(OutOfRange):
        with handle.locked() as state:
            state.get_line(5)
    # 锁已释放：再次访问不会阻塞
    assert handle.line_count() == 1


def test_default_handle_wraps_empty_document() -> None:
    handle = EditorStateHandle()
    assert handle.line_count() == 0


def test_plugin_connect_is_idempotent_and_disconnect_removes() -> None:
    handle = EditorStateHandle()
    peer = _RecordingPeer()
    handle.on_plugin_connect(peer)
    handle.on_plugin_connect(peer)
    assert handle.connected_peers() == [peer]

    handle.on_plugin_disconnect(peer)
    assert handle.connected_peers() == []
    handle.on_plugin_disconnect(peer)


def test_notify_plugins_skips_closed_channels(caplog: pytest.LogCaptureFixture) -> None:
    handle = EditorStateHandle()
    live = _RecordingPeer()
    dead = _RecordingPeer(closed=True)
    handle.on_plugin_connect(live)
    handle.on_plugin_connect(dead)

    with caplog.at_level("WARNING"):
        sent = handle.notify_plugins("update", {"rev": 3})

    assert sent == 1
    assert live.sent == [("update", {"rev": 3})]
    assert "closed plugin channel" in caplog.text


def test_concurrent_style_writes_are_serialized() -> None:
    handle = EditorStateHandle(EditorState(["line\n"] * 4))
    barrier = threading.Barrier(8)

    def _writer(tag: int) -> None:
        """每个线程在同一行上反复写入。"""

        barrier.wait()
        for i in range(200):
            handle.set_line_styles(tag % 4, [{"start": 0, "end": i, "tag": tag}])

    threads = [threading.Thread(target=_writer, args=(t,)) for t in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    snap = handle.snapshot()
    assert snap.revision == 8 * 200
    for spans in snap.styles:
        assert len(spans) == 1


@pytest.mark.parametrize(
    "text,expected",
    [
        ("a\x0cb\n", ["a\x0cb\n"]),
        ("one\u2028still one\nthree\x85\x0b\x1c\u2029\n", ["one\u2028still one\n", "three\x85\x0b\x1c\u2029\n"]),
        ("\n\n", ["\n", "\n"]),
        ("no newline", ["no newline"]),
    ],
)
def test_only_newline_separates_lines(text: str, expected: List[str]) -> None:
    state = EditorState.from_text(text)
    assert state.line_count() == len(expected)
    assert [state.get_line(i) for i in range(state.line_count())] == expected
    assert state.text() == text

    state.set_text(text)
    assert state.line_count() == len(expected)
