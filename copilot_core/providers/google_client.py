"""Google Gemini Provider 适配器。

- 角色映射：user -> user，assistant -> model。
- Gemini 没有 system 角色：system 文本以 "System: ...\n\n" 的形式
  并入第一条 user 消息开头。
- 图片只接受 data URL，转换为 inline_data {mime_type, data}。
- 流式使用 :streamGenerateContent?alt=sse。
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

from copilot_core.domain.exceptions import ValidationError
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

SYSTEM_PREFIX = "System: "


class GoogleClient(HttpProviderClient):
    name = "google"

    def _endpoint(self, model: str, stream: bool) -> Tuple[str, Optional[Dict[str, str]]]:
        if stream:
            return f"{self.base_url}/models/{model}:streamGenerateContent", {"alt": "sse"}
        return f"{self.base_url}/models/{model}:generateContent", None

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {"x-goog-api-key": api_key, "Content-Type": "application/json"}

    def _build_payload(
        self,
        messages: Sequence[ChatMessage],
        model: str,
        max_tokens: int,
        temperature: float,
        stream: bool,
    ) -> Dict[str, Any]:
        return {
            "contents": self.format_messages(messages),
            "generationConfig": {"maxOutputTokens": max_tokens, "temperature": temperature},
        }

    def format_messages(self, messages: Sequence[ChatMessage]) -> List[Dict[str, Any]]:
        system_texts = [m.text() for m in messages if m.role == "system"]
        contents: List[Dict[str, Any]] = []
        for m in messages:
            if m.role == "system":
                continue
            contents.append({
                "role": "model" if m.role == "assistant" else "user",
                "parts": [self._format_part(p) for p in m.parts],
            })
        if system_texts:
            prefix = f"{SYSTEM_PREFIX}{' '.join(system_texts)}\n\n"
            first_user = next((c for c in contents if c["role"] == "user"), None)
            if first_user is None:
                contents.insert(0, {"role": "user", "parts": [{"text": prefix}]})
            else:
                first_user["parts"].insert(0, {"text": prefix})
        return contents

    @staticmethod
    def _format_part(part: ContentPart) -> Dict[str, Any]:
        if isinstance(part, TextPart):
            return {"text": part.text}
        if not part.is_inline:
            raise ValidationError(
                code="INVALID_IMAGE",
                message="Google provider requires images as base64 data URLs",
                provider="google",
            )
        data_url = part.data_url()
        return {"inline_data": {"mime_type": data_url.mime_type, "data": data_url.data}}

    def parse_messages(self, native: List[Dict[str, Any]]) -> List[ChatMessage]:
        """format_messages 的逆变换；并入 user 消息的 system 前缀会还原为 system 消息。"""

        result: List[ChatMessage] = []
        for item in native:
            role = "assistant" if item.get("role") == "model" else "user"
            parts: List[ContentPart] = []
            for p in item.get("parts") or []:
                if "inline_data" in p:
                    inline = p["inline_data"]
                    parts.append(ImagePart(url=build_data_url(inline["mime_type"], inline["data"])))
                    continue
                text = p.get("text") or ""
                if not result and not parts and text.startswith(SYSTEM_PREFIX) and text.endswith("\n\n"):
                    result.append(ChatMessage(role="system", content=text[len(SYSTEM_PREFIX):-2]))
                    continue
                parts.append(TextPart(text))
            if not parts:
                continue
            if len(parts) == 1 and isinstance(parts[0], TextPart):
                result.append(ChatMessage(role=role, content=parts[0].text))
            else:
                result.append(ChatMessage(role=role, content=tuple(parts)))
        return result

    @staticmethod
    def _candidate_text(data: Dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(p.get("text") or "" for p in parts)

    def _parse_response(self, data: Dict[str, Any], model: str) -> NormalizedCompletion:
        usage_raw = data.get("usageMetadata") or {}
        usage = TokenUsage(
            prompt_tokens=self._usage_int(usage_raw, "promptTokenCount"),
            completion_tokens=self._usage_int(usage_raw, "candidatesTokenCount"),
            total_tokens=self._usage_int(usage_raw, "totalTokenCount"),
        )
        return NormalizedCompletion(
            text=self._candidate_text(data),
            usage=usage,
            model=data.get("modelVersion") or model,
            provider=self.name,
            raw=data,
        )

    def _delta_text(self, event: Dict[str, Any]) -> str:
        return self._candidate_text(event)
