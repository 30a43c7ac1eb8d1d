"""Provider 抽象接口与公共 HTTP 实现。

上层 ConversationAgent 不直接依赖具体厂商的 HTTP 协议，而是依赖 ProviderAdapter：

- 每个厂商实现一个适配器（如 OpenAIClient、AnthropicClient）。
- 负责：把中立的 ChatMessage 列表转成厂商请求体，并把响应/流解析回
  NormalizedCompletion / StreamChunk。

HttpProviderClient 封装了各厂商共用的部分：API Key 校验、能力检查、
默认参数、httpx 调用、SSE 行解析以及统一的错误包装。
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence, Tuple

import httpx

from copilot_core.domain.exceptions import CapabilityError, ValidationError, VendorCallFailure
from copilot_core.domain.models import ChatMessage, CompletionOptions, NormalizedCompletion, StreamChunk
from copilot_core.providers.registry import ProviderConfig


class ProviderAdapter(Protocol):
    """LLM Provider 适配器协议。

    实现者需要提供：
    - name: Provider 名称，用于日志与结果回显。
    - 能力探测：supports_images / supports_streaming / list_models。
    - complete(messages, options): 非流式调用，返回 NormalizedCompletion。
    - complete_stream(messages, options): 立即完成校验，返回按序产出
      StreamChunk 的异步迭代器，最后一个块为结束标记。
    """

    name: str

    def supports_images(self) -> bool:
        ...

    def supports_streaming(self) -> bool:
        ...

    def list_models(self) -> List[str]:
        ...

    def default_model(self) -> str:
        ...

    async def complete(self, messages: Sequence[ChatMessage], options: CompletionOptions) -> NormalizedCompletion:
        ...

    def complete_stream(self, messages: Sequence[ChatMessage], options: CompletionOptions) -> AsyncIterator[StreamChunk]:
        ...


def _sse_data(line: str) -> Optional[str]:
    """从一行 SSE 中取出 data 负载，忽略 event/注释/空行以及 [DONE]。"""

    if not line:
        return None
    line = line.strip()
    if not line or line.startswith(":") or line.startswith("event:"):
        return None
    if line.startswith("data:"):
        line = line[5:].strip()
    if not line or line == "[DONE]":
        return None
    return line


def vendor_error_detail(body: str) -> str:
    """尽量从厂商错误 JSON 中提取 error.message，失败时返回原始文本。"""

    try:
        data = json.loads(body)
    except (TypeError, ValueError):
        return body
    if isinstance(data, list) and data:
        data = data[0]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str):
            return err
        if data.get("message"):
            return str(data["message"])
    return body


class HttpProviderClient:
    """基于 httpx.AsyncClient 的 Provider 公共实现。

    子类需要实现：format_messages / parse_messages / _endpoint /
    _headers / _build_payload / _parse_response / _delta_text。
    """

    name = ""

    def __init__(self, settings, config: ProviderConfig):
        self._settings = settings
        self._config = config

    # ---- 能力探测 ----

    def supports_images(self) -> bool:
        return self._config.supports_images

    def supports_streaming(self) -> bool:
        return self._config.supports_streaming

    def list_models(self) -> List[str]:
        return list(self._config.models)

    def default_model(self) -> str:
        return getattr(self._settings, f"{self.name}_model", None) or self._config.best_model

    # ---- 调用入口 ----

    async def complete(self, messages: Sequence[ChatMessage], options: CompletionOptions) -> NormalizedCompletion:
        """执行一次非流式调用。

        步骤：
        1. 校验 API Key 与图片能力。
        2. 构造厂商请求体并发送。
        3. 把网络错误/限流/4xx-5xx 统一包装为 VendorCallFailure。
        4. 解析为 NormalizedCompletion（usage 缺失时为全 0）。
        """

        api_key = self._api_key()
        self._check_images(messages)
        model, max_tokens, temperature = self._resolve(options)
        payload = self._build_payload(messages, model, max_tokens, temperature, stream=False)
        url, params = self._endpoint(model, stream=False)
        data = await self._post_json(url, payload, self._headers(api_key), params)
        return self._parse_response(data, model)

    def complete_stream(self, messages: Sequence[ChatMessage], options: CompletionOptions) -> AsyncIterator[StreamChunk]:
        """执行一次流式调用。

        校验在调用时立即完成（不支持时立刻抛出 CapabilityError），
        HTTP 请求在第一次迭代时才真正发出。
        """

        if not self.supports_streaming():
            raise CapabilityError(
                code="STREAMING_NOT_SUPPORTED",
                message=f"{self._config.display_name} does not support streaming",
                provider=self.name,
            )
        api_key = self._api_key()
        self._check_images(messages)
        model, max_tokens, temperature = self._resolve(options)
        payload = self._build_payload(messages, model, max_tokens, temperature, stream=True)
        url, params = self._endpoint(model, stream=True)
        return self._iter_stream(url, payload, self._headers(api_key), params)

    # ---- 子类钩子 ----

    def format_messages(self, messages: Sequence[ChatMessage]) -> Any:
        raise NotImplementedError

    def parse_messages(self, native: Any) -> List[ChatMessage]:
        raise NotImplementedError

    def _endpoint(self, model: str, stream: bool) -> Tuple[str, Optional[Dict[str, str]]]:
        raise NotImplementedError

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
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
        raise NotImplementedError

    def _parse_response(self, data: Dict[str, Any], model: str) -> NormalizedCompletion:
        raise NotImplementedError

    def _delta_text(self, event: Dict[str, Any]) -> str:
        raise NotImplementedError

    # ---- 辅助方法 ----

    @property
    def base_url(self) -> str:
        return (getattr(self._settings, f"{self.name}_base_url", None) or self._config.base_url).rstrip("/")

    def _api_key(self) -> str:
        key = getattr(self._settings, f"{self.name}_api_key", None)
        if not key:
            # 配置缺失走 ValidationError，方便上层统一处理
            raise ValidationError(
                code="MISSING_API_KEY",
                message=f"{self.name.upper()}_API_KEY not set",
                provider=self.name,
            )
        return key

    def _check_images(self, messages: Sequence[ChatMessage]) -> None:
        if self.supports_images():
            return
        if any(m.has_images() for m in messages):
            raise CapabilityError(
                code="IMAGES_NOT_SUPPORTED",
                message=f"{self._config.display_name} does not support image input",
                provider=self.name,
            )

    def _resolve(self, options: Optional[CompletionOptions]) -> Tuple[str, int, float]:
        options = options or CompletionOptions()
        model = options.model or self.default_model()
        max_tokens = options.max_tokens or getattr(self._settings, "max_tokens", 4000)
        temperature = options.temperature
        if temperature is None:
            temperature = getattr(self._settings, "temperature", 0.7)
        return model, max_tokens, temperature

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=getattr(self._settings, "http_timeout", None), trust_env=False)

    def _failure(self, status: int, body: str) -> VendorCallFailure:
        detail = vendor_error_detail(body)
        if status == 429:
            return VendorCallFailure(
                code="RATE_LIMIT",
                message=f"{self._config.display_name} rate limit: {detail}",
                http_status=429,
                provider=self.name,
            )
        return VendorCallFailure(
            code="API_ERROR",
            message=f"{self._config.display_name} API error ({status}): {detail}",
            http_status=status,
            provider=self.name,
        )

    async def _post_json(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Dict[str, str],
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                resp = await client.post(url, json=payload, headers=headers, params=params)
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接中断等
            raise VendorCallFailure(
                code="NETWORK_ERROR",
                message=f"{self._config.display_name} network error: {e}",
                provider=self.name,
            )
        if resp.status_code >= 400:
            raise self._failure(resp.status_code, resp.text)
        return resp.json()

    async def _iter_stream(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Dict[str, str],
        params: Optional[Dict[str, str]] = None,
    ) -> AsyncIterator[StreamChunk]:
        try:
            async with self._client() as client:
                async with client.stream("POST", url, json=payload, headers=headers, params=params) as resp:
                    if resp.status_code >= 400:
                        body = await resp.aread()
                        raise self._failure(resp.status_code, body.decode("utf-8", errors="replace"))
                    async for line in resp.aiter_lines():
                        data_str = _sse_data(line)
                        if data_str is None:
                            continue
                        try:
                            event = json.loads(data_str)
                        except json.JSONDecodeError:
                            continue
                        text = self._delta_text(event)
                        if text:
                            yield StreamChunk(delta_text=text)
        except httpx.RequestError as e:
            raise VendorCallFailure(
                code="NETWORK_ERROR",
                message=f"{self._config.display_name} network error: {e}",
                provider=self.name,
            )
        yield StreamChunk.end()

    @staticmethod
    def _usage_int(raw: Dict[str, Any], key: str) -> int:
        try:
            return int(raw.get(key) or 0)
        except (TypeError, ValueError):
            return 0
