"""Anthropic Provider 适配器。

与 OpenAI 协议的主要差别：

- system 提示不放在 messages 中，而是放到顶层 system 字段；
  只取第一条 system 消息，其余 system 消息直接丢弃。
- 图片分段使用 {"type": "image", "source": {...}}：
  data URL 转成 base64 source（media_type 取自 data URL），远程地址转成 url source。
- 流式事件为 content_block_delta / text_delta。
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

from copilot_core.domain.exceptions import VendorCallFailure
from copilot_core.domain.models import (
    ChatMessage,
    ContentPart,
    ImagePart,
    NormalizedCompletion,
    TextPart,
    TokenUsage,
    build_data_url,
)
from copilot_core.providers.base import HttpProviderClient

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicClient(HttpProviderClient):
    name = "anthropic"

    def _endpoint(self, model: str, stream: bool) -> Tuple[str, Optional[Dict[str, str]]]:
        return f"{self.base_url}/messages", None

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }

    def _build_payload(
        self,
        messages: Sequence[ChatMessage],
        model: str,
        max_tokens: int,
        temperature: float,
        stream: bool,
    ) -> Dict[str, Any]:
        native = self.format_messages(messages)
        payload: Dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": native["messages"],
        }
        if native.get("system"):
            payload["system"] = native["system"]
        if stream:
            payload["stream"] = True
        return payload

    def format_messages(self, messages: Sequence[ChatMessage]) -> Dict[str, Any]:
        """返回 {"system": str | None, "messages": [...]}。"""

        system: Optional[str] = None
        converted: List[Dict[str, Any]] = []
        for m in messages:
            if m.role == "system":
                if system is None:
                    system = m.text()
                continue
            if isinstance(m.content, str):
                converted.append({"role": m.role, "content": m.content})
            else:
                converted.append({"role": m.role, "content": [self._format_part(p) for p in m.content]})
        return {"system": system, "messages": converted}

    @staticmethod
    def _format_part(part: ContentPart) -> Dict[str, Any]:
        if isinstance(part, TextPart):
            return {"type": "text", "text": part.text}
        if part.is_inline:
            data_url = part.data_url()
            return {
                "type": "image",
                "source": {"type": "base64", "media_type": data_url.mime_type, "data": data_url.data},
            }
        return {"type": "image", "source": {"type": "url", "url": part.url}}

    def parse_messages(self, native: Dict[str, Any]) -> List[ChatMessage]:
        result: List[ChatMessage] = []
        if native.get("system"):
            result.append(ChatMessage(role="system", content=native["system"]))
        for m in native.get("messages") or []:
            content = m.get("content")
            if isinstance(content, str):
                result.append(ChatMessage(role=m["role"], content=content))
                continue
            parts: List[ContentPart] = []
            for block in content or []:
                if block.get("type") == "text":
                    parts.append(TextPart(block.get("text") or ""))
                elif block.get("type") == "image":
                    source = block.get("source") or {}
                    if source.get("type") == "base64":
                        parts.append(ImagePart(url=build_data_url(source["media_type"], source["data"])))
                    else:
                        parts.append(ImagePart(url=source.get("url") or ""))
            result.append(ChatMessage(role=m["role"], content=tuple(parts)))
        return result

    def _parse_response(self, data: Dict[str, Any], model: str) -> NormalizedCompletion:
        blocks = data.get("content") or []
        text = "".join(b.get("text") or "" for b in blocks if b.get("type") == "text")
        usage_raw = data.get("usage") or {}
        prompt_tokens = self._usage_int(usage_raw, "input_tokens")
        completion_tokens = self._usage_int(usage_raw, "output_tokens")
        return NormalizedCompletion(
            text=text,
            usage=TokenUsage(prompt_tokens, completion_tokens, prompt_tokens + completion_tokens),
            model=data.get("model") or model,
            provider=self.name,
            raw=data,
        )

    def _delta_text(self, event: Dict[str, Any]) -> str:
        kind = event.get("type")
        if kind == "error":
            err = event.get("error") or {}
            raise VendorCallFailure(
                code="API_ERROR",
                message=f"Anthropic API error: {err.get('message') or err}",
                provider=self.name,
            )
        if kind != "content_block_delta":
            return ""
        delta = event.get("delta") or {}
        if delta.get("type") != "text_delta":
            return ""
        return delta.get("text") or ""
