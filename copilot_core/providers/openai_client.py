"""OpenAI Provider 适配器。

本模块负责：

1. 把中立的 ChatMessage 列表转换为 OpenAI Chat Completions 的 messages。
   图片分段转换为 {"type": "image_url", "image_url": {"url", "detail"}}。
2. 调用 /chat/completions（流式时解析 choices[0].delta.content）。
3. 把响应解析为 NormalizedCompletion。

OpenAICompatibleClient 同时是 Mistral / Fireworks 适配器的基类，
二者使用相同的 HTTP 协议，只在消息格式与模型 ID 上有差别。
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

from copilot_core.domain.models import (
    ChatMessage,
    ImagePart,
    NormalizedCompletion,
    TextPart,
    TokenUsage,
    coerce_content,
)
from copilot_core.providers.base import HttpProviderClient


class OpenAICompatibleClient(HttpProviderClient):
    """OpenAI 兼容协议（/chat/completions + Bearer 鉴权）的公共实现。"""

    def _endpoint(self, model: str, stream: bool) -> Tuple[str, Optional[Dict[str, str]]]:
        return f"{self.base_url}/chat/completions", None

    def _model_id(self, model: str) -> str:
        return model

    def _build_payload(
        self,
        messages: Sequence[ChatMessage],
        model: str,
        max_tokens: int,
        temperature: float,
        stream: bool,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._model_id(model),
            "messages": self.format_messages(messages),
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if stream:
            payload["stream"] = True
        return payload

    def format_messages(self, messages: Sequence[ChatMessage]) -> List[Dict[str, Any]]:
        return [{"role": m.role, "content": self._format_content(m)} for m in messages]

    def _format_content(self, message: ChatMessage) -> Any:
        # 纯文本协议：多段文本拼成一个字符串
        return message.text()

    def parse_messages(self, native: List[Dict[str, Any]]) -> List[ChatMessage]:
        return [ChatMessage(role=m.get("role") or "user", content=coerce_content(m.get("content") or "")) for m in native]

    def _parse_response(self, data: Dict[str, Any], model: str) -> NormalizedCompletion:
        choices = data.get("choices") or []
        message = (choices[0].get("message") if choices else None) or {}
        usage_raw = data.get("usage") or {}
        usage = TokenUsage(
            prompt_tokens=self._usage_int(usage_raw, "prompt_tokens"),
            completion_tokens=self._usage_int(usage_raw, "completion_tokens"),
            total_tokens=self._usage_int(usage_raw, "total_tokens"),
        )
        return NormalizedCompletion(
            text=message.get("content") or "",
            usage=usage,
            model=data.get("model") or model,
            provider=self.name,
            raw=data,
        )

    def _delta_text(self, event: Dict[str, Any]) -> str:
        choices = event.get("choices") or []
        if not choices:
            return ""
        delta = choices[0].get("delta") or {}
        return delta.get("content") or ""


class OpenAIClient(OpenAICompatibleClient):
    """OpenAI 提供方客户端，支持图片输入。"""

    name = "openai"

    def _format_content(self, message: ChatMessage) -> Any:
        if isinstance(message.content, str):
            return message.content
        parts: List[Dict[str, Any]] = []
        for part in message.content:
            if isinstance(part, TextPart):
                parts.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                parts.append({"type": "image_url", "image_url": {"url": part.url, "detail": part.detail or "auto"}})
        return parts
