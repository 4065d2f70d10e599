"""
插件入站请求的校验式解码（method + params -> 封闭的 tagged 请求类型）。

说明：
- 方法集合是封闭的：`n_lines` / `get_line` / `set_line_fg_spans`，其余一律解码为 `UnknownRequest`；
- 参数先经 pydantic 校验，再交给 dispatcher 执行；缺字段/类型错误解码为 `MalformedRequest`，
  不会有任何未校验字段进入执行阶段；
- 每个方法的回复语义（call / notification）固定，见 `method_semantics`。
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Literal, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError, model_validator

Semantics = Literal["call", "notification"]


class PluginMethod(str, Enum):
    """已识别的插件方法（线上名称）。"""

    N_LINES = "n_lines"
    GET_LINE = "get_line"
    SET_LINE_FG_SPANS = "set_line_fg_spans"


_SEMANTICS: Dict[str, Semantics] = {
    PluginMethod.N_LINES.value: "call",
    PluginMethod.GET_LINE.value: "call",
    PluginMethod.SET_LINE_FG_SPANS.value: "notification",
}


def method_semantics(method: str) -> Semantics:
    """返回方法的回复语义；未知方法视为 notification（永不回复）。"""

    return _SEMANTICS.get(method, "notification")


class StyleSpan(BaseModel):
    """
    单个 style span：非负 `start/end`（start <= end）+ 任意属性描述字段。

    说明：
    - 属性字段（如 `fg` / `attr`）对 host 不透明，原样保留。
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    start: StrictInt = Field(ge=0)
    end: StrictInt = Field(ge=0)

    @model_validator(mode="after")
    def _check_order(self) -> "StyleSpan":
        """要求 start <= end。"""

        if self.end < self.start:
            raise ValueError("span end must be >= start")
        return self


class _GetLineParams(BaseModel):
    """get_line 参数。"""

    model_config = ConfigDict(extra="ignore")

    line: StrictInt = Field(ge=0)


class _SetLineFgSpansParams(BaseModel):
    """set_line_fg_spans 参数。"""

    model_config = ConfigDict(extra="ignore")

    line: StrictInt = Field(ge=0)
    spans: List[StyleSpan]


@dataclass(frozen=True)
class QueryLineCount:
    """请求：读取总行数（call）。"""

    method: str = PluginMethod.N_LINES.value


@dataclass(frozen=True)
class QueryLine:
    """请求：读取某行文本（call）。"""

    line: int
    method: str = PluginMethod.GET_LINE.value


@dataclass(frozen=True)
class ApplyLineStyles:
    """请求：替换某行 style spans（notification）。"""

    line: int
    spans: Tuple[Dict[str, Any], ...]
    method: str = PluginMethod.SET_LINE_FG_SPANS.value


@dataclass(frozen=True)
class UnknownRequest:
    """请求：未识别的方法名（原样保留以便记录日志）。"""

    method: str


@dataclass(frozen=True)
class MalformedRequest:
    """请求：方法已识别，但参数校验失败。"""

    method: str
    reason: str


PluginRequest = Union[QueryLineCount, QueryLine, ApplyLineStyles, UnknownRequest, MalformedRequest]


def _format_validation_error(e: ValidationError) -> str:
    """把 pydantic ValidationError 压缩为单行可读原因。"""

    parts: List[str] = []
    for err in e.errors():
        loc = ".".join(str(x) for x in err.get("loc", ())) or "params"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts) or "invalid params"


def decode_request(method: str, params: Any) -> PluginRequest:
    """
    把原始 method/params 解码为 tagged 请求。

    参数：
    - method：原始方法名
    - params：任意 JSON 值（来自不可信对端）

    返回：
    - PluginRequest：永远不抛异常；失败以 MalformedRequest/UnknownRequest 表示
    """

    if method == PluginMethod.N_LINES.value:
        return QueryLineCount()

    if method == PluginMethod.GET_LINE.value:
        if not isinstance(params, dict):
            return MalformedRequest(method=method, reason="params must be an object")
        try:
            args = _GetLineParams.model_validate(params)
        except ValidationError as e:
            return MalformedRequest(method=method, reason=_format_validation_error(e))
        return QueryLine(line=args.line)

    if method == PluginMethod.SET_LINE_FG_SPANS.value:
        if not isinstance(params, dict):
            return MalformedRequest(method=method, reason="params must be an object")
        try:
            args2 = _SetLineFgSpansParams.model_validate(params)
        except ValidationError as e:
            return MalformedRequest(method=method, reason=_format_validation_error(e))
        return ApplyLineStyles(line=args2.line, spans=tuple(s.model_dump() for s in args2.spans))

    return UnknownRequest(method=str(method))
