"""统一的对话与结果数据模型。

本模块定义了 Agent 内部在不同 Provider 之间共享的中立数据结构：

- ChatMessage: 一条对话消息，内容可以是纯文本，也可以是文本/图片分段序列。
- NormalizedCompletion / StreamChunk: 从厂商响应解析后的统一结果。
- KnowledgeFragment: 知识库检索返回的带分数片段。
- ProviderCapabilities: 某个 Provider 的静态能力描述。

所有 Provider 适配器都必须只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做双向转换。
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence, Tuple, Union

from copilot_core.domain.exceptions import ValidationError


# 中立消息角色（system 只出现在发送给 Provider 的首条消息中）
Role = Literal["system", "user", "assistant"]
FragmentKind = Literal["text", "image"]

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[^;,]*)*?;base64,(?P<data>.*)$", re.DOTALL)


@dataclass(frozen=True)
class DataUrl:
    """data:<mime>;base64,<payload> 的解析结果。"""

    mime_type: str
    data: str

    def to_url(self) -> str:
        return build_data_url(self.mime_type, self.data)


def parse_data_url(url: str) -> DataUrl:
    """解析 data URL，缺省 mime 时按 RFC 2397 视为 application/octet-stream。"""

    match = _DATA_URL_RE.match(url or "")
    if not match:
        raise ValidationError(code="INVALID_IMAGE", message="Image must be a base64 data URL")
    return DataUrl(mime_type=match.group("mime") or "application/octet-stream", data=match.group("data"))


def build_data_url(mime_type: str, data: str) -> str:
    return f"data:{mime_type};base64,{data}"


def is_data_url(url: str) -> bool:
    return bool(url) and url.startswith("data:")


@dataclass(frozen=True)
class TextPart:
    text: str
    type: Literal["text"] = "text"


@dataclass(frozen=True)
class ImagePart:
    """图片分段：url 通常是 data URL，也可以是可公开访问的远程地址。"""

    url: str
    detail: Optional[str] = None
    type: Literal["image"] = "image"

    @property
    def is_inline(self) -> bool:
        return is_data_url(self.url)

    def data_url(self) -> DataUrl:
        return parse_data_url(self.url)


ContentPart = Union[TextPart, ImagePart]
MessageContent = Union[str, Tuple[ContentPart, ...]]


@dataclass(frozen=True)
class ChatMessage:
    """一条中立对话消息，加入历史后不可变。"""

    role: Role
    content: MessageContent

    def __post_init__(self) -> None:
        if not isinstance(self.content, str):
            object.__setattr__(self, "content", tuple(self.content))

    @property
    def parts(self) -> Tuple[ContentPart, ...]:
        if isinstance(self.content, str):
            return (TextPart(self.content),)
        return self.content

    def text(self) -> str:
        """只拼接文本分段，图片不参与。"""

        if isinstance(self.content, str):
            return self.content
        return " ".join(p.text for p in self.content if isinstance(p, TextPart))

    def has_images(self) -> bool:
        return any(isinstance(p, ImagePart) for p in self.parts)


def coerce_content(raw: Any) -> MessageContent:
    """把 API 风格的消息内容转换为中立表示。

    支持：
    - 纯字符串；
    - {"type": "text", "text": ...}；
    - {"type": "image_url", "image_url": {"url": ...}}（OpenAI 风格）；
    - {"type": "image", "url": ...} 或 {"type": "image", "data": ..., "mime_type": ...}。
    """

    if isinstance(raw, str):
        return raw
    if isinstance(raw, (TextPart, ImagePart)):
        return (raw,)
    if not isinstance(raw, Sequence):
        raise ValidationError(code="INVALID_MESSAGE", message="Message must be a string or a list of parts")
    parts: List[ContentPart] = []
    for item in raw:
        if isinstance(item, (TextPart, ImagePart)):
            parts.append(item)
            continue
        if not isinstance(item, dict):
            raise ValidationError(code="INVALID_MESSAGE", message=f"Unsupported message part: {item!r}")
        kind = item.get("type")
        if kind == "text":
            parts.append(TextPart(str(item.get("text") or "")))
        elif kind == "image_url":
            image_url = item.get("image_url") or {}
            if isinstance(image_url, str):
                parts.append(ImagePart(url=image_url))
            else:
                parts.append(ImagePart(url=image_url.get("url") or "", detail=image_url.get("detail")))
        elif kind == "image":
            if item.get("url"):
                parts.append(ImagePart(url=item["url"], detail=item.get("detail")))
            elif item.get("data"):
                mime = item.get("mime_type") or "image/jpeg"
                parts.append(ImagePart(url=build_data_url(mime, item["data"])))
            else:
                raise ValidationError(code="INVALID_MESSAGE", message="Image part requires url or data")
        else:
            raise ValidationError(code="INVALID_MESSAGE", message=f"Unsupported part type: {kind!r}")
    return tuple(parts)


@dataclass
class CompletionOptions:
    """单次 Provider 调用参数；None 表示使用 Provider 默认值。"""

    model: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None


@dataclass
class TokenUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def zero(cls) -> "TokenUsage":
        return cls(0, 0, 0)


@dataclass
class NormalizedCompletion:
    """一次非流式调用的最终结果。

    - text: 模型生成的完整回答。
    - usage: token 统计，厂商未返回时为全 0。
    - model: 厂商回显的模型 ID。
    - provider: Provider 名称。
    - raw: 原始响应 JSON，用于调试。
    """

    text: str
    usage: TokenUsage
    model: str
    provider: str
    raw: Optional[dict] = None


@dataclass(frozen=True)
class StreamChunk:
    """流式增量；done=True 的块是显式的结束标记，不携带文本。"""

    delta_text: str = ""
    done: bool = False

    @classmethod
    def end(cls) -> "StreamChunk":
        return cls(delta_text="", done=True)


@dataclass
class KnowledgeFragment:
    """知识库检索命中的片段。

    score 为命中的查询词数量，relevance = min(score / 词数, 1.0)。
    """

    id: str
    display_name: str
    kind: FragmentKind
    text_excerpt: Optional[str]
    relevance: float
    score: int = 0

    def summary(self) -> "FragmentSummary":
        return FragmentSummary(
            id=self.id,
            display_name=self.display_name,
            kind=self.kind,
            relevance=self.relevance,
        )


@dataclass(frozen=True)
class FragmentSummary:
    """返回给调用方的片段摘要，不包含正文。"""

    id: str
    display_name: str
    kind: FragmentKind
    relevance: float


@dataclass
class ProviderCapabilities:
    name: str
    display_name: str
    supports_images: bool
    supports_streaming: bool
    models: List[str] = field(default_factory=list)
    is_configured: bool = False
    best_model: Optional[str] = None
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "displayName": self.display_name,
            "supportsImages": self.supports_images,
            "supportsStreaming": self.supports_streaming,
            "models": list(self.models),
            "isConfigured": self.is_configured,
            "bestModel": self.best_model,
            "description": self.description,
        }
