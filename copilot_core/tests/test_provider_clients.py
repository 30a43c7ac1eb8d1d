import base64
import dataclasses
import json

import httpx
import pytest

from copilot_core.domain.exceptions import CapabilityError, ValidationError, VendorCallFailure
from copilot_core.domain.models import ChatMessage, CompletionOptions, ImagePart, TextPart, build_data_url
from copilot_core.providers.anthropic_client import AnthropicClient
from copilot_core.providers.fireworks_client import FireworksClient
from copilot_core.providers.google_client import GoogleClient
from copilot_core.providers.mistral_client import MistralClient
from copilot_core.providers.openai_client import OpenAIClient
from copilot_core.providers.registry import (
    ANTHROPIC_CONFIG,
    FIREWORKS_CONFIG,
    GOOGLE_CONFIG,
    MISTRAL_CONFIG,
    OPENAI_CONFIG,
)

PNG_B64 = base64.b64encode(b"\x89PNG\r\n\x1a\n-pixels-\x00\xff").decode()
PNG_URL = build_data_url("image/png", PNG_B64)


def _data_lines(*events):
    return [f"data: {json.dumps(e)}" for e in events]


def _image_turn():
    return [
        ChatMessage(role="system", content="sys"),
        ChatMessage(role="user", content=[TextPart("look"), ImagePart(url=PNG_URL)]),
    ]


# ---- OpenAI ----


@pytest.mark.asyncio
async def test_openai_complete_payload_and_parse(settings_stub, fake_http):
    fake_http.route(
        "POST",
        "/chat/completions",
        payload={
            "model": "gpt-4o-2024-08-06",
            "choices": [{"message": {"role": "assistant", "content": "ok"}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5},
        },
    )
    client = OpenAIClient(settings_stub, OPENAI_CONFIG)
    res = await client.complete(_image_turn(), CompletionOptions(temperature=0))

    call = fake_http.calls[0]
    assert call["url"] == "https://api.openai.com/v1/chat/completions"
    assert call["headers"]["Authorization"] == "Bearer sk-openai"
    payload = call["json"]
    assert payload["model"] == "gpt-4o"
    assert payload["temperature"] == 0
    assert payload["max_tokens"] == 4000
    assert "stream" not in payload
    assert payload["messages"][0] == {"role": "system", "content": "sys"}
    assert payload["messages"][1]["content"] == [
        {"type": "text", "text": "look"},
        {"type": "image_url", "image_url": {"url": PNG_URL, "detail": "auto"}},
    ]
    assert res.text == "ok"
    assert res.model == "gpt-4o-2024-08-06"
    assert res.provider == "openai"
    assert res.usage.total_tokens == 5
    # 核心层不设置超时
    assert fake_http.client_kwargs[0]["timeout"] is None


@pytest.mark.asyncio
async def test_openai_missing_usage_is_zero_filled(settings_stub, fake_http):
    fake_http.route("POST", "/chat/completions", payload={"choices": [{"message": {"content": "x"}}]})
    res = await OpenAIClient(settings_stub, OPENAI_CONFIG).complete(
        [ChatMessage(role="user", content="hi")], CompletionOptions(model="gpt-4")
    )
    assert (res.usage.prompt_tokens, res.usage.completion_tokens, res.usage.total_tokens) == (0, 0, 0)
    assert res.model == "gpt-4"


@pytest.mark.asyncio
async def test_openai_stream_yields_deltas_then_end_marker(settings_stub, fake_http):
    lines = _data_lines(
        {"choices": [{"delta": {"role": "assistant"}}]},
        {"choices": [{"delta": {"content": "Hel"}}]},
        {"choices": [{"delta": {"content": "lo"}}]},
    ) + ["", ": keep-alive", "data: [DONE]"]
    fake_http.route("POST", "/chat/completions", lines=lines)
    client = OpenAIClient(settings_stub, OPENAI_CONFIG)

    stream = client.complete_stream([ChatMessage(role="user", content="hi")], CompletionOptions())
    # 请求在迭代时才发出
    assert fake_http.calls == []
    chunks = [c async for c in stream]

    assert [c.delta_text for c in chunks[:-1]] == ["Hel", "lo"]
    assert chunks[-1].done
    assert fake_http.calls[0]["json"]["stream"] is True


@pytest.mark.asyncio
async def test_openai_http_error_embeds_vendor_status_and_message(settings_stub, fake_http):
    fake_http.route("POST", "/chat/completions", status_code=401, payload={"error": {"message": "Invalid API key"}})
    with pytest.raises(VendorCallFailure) as excinfo:
        await OpenAIClient(settings_stub, OPENAI_CONFIG).complete(
            [ChatMessage(role="user", content="hi")], CompletionOptions()
        )
    assert excinfo.value.http_status == 401
    assert "401" in excinfo.value.message
    assert "Invalid API key" in excinfo.value.message


@pytest.mark.asyncio
async def test_openai_rate_limit(settings_stub, fake_http):
    fake_http.route("POST", "/chat/completions", status_code=429, text="slow down")
    with pytest.raises(VendorCallFailure) as excinfo:
        await OpenAIClient(settings_stub, OPENAI_CONFIG).complete(
            [ChatMessage(role="user", content="hi")], CompletionOptions()
        )
    assert excinfo.value.code == "RATE_LIMIT"
    assert excinfo.value.http_status == 429


@pytest.mark.asyncio
async def test_openai_stream_http_error(settings_stub, fake_http):
    fake_http.route("POST", "/chat/completions", status_code=500, text="upstream down")
    stream = OpenAIClient(settings_stub, OPENAI_CONFIG).complete_stream(
        [ChatMessage(role="user", content="hi")], CompletionOptions()
    )
    with pytest.raises(VendorCallFailure) as excinfo:
        async for _ in stream:
            pass
    assert "upstream down" in excinfo.value.message
    assert excinfo.value.http_status == 500


@pytest.mark.asyncio
async def test_openai_network_error(settings_stub, fake_http):
    fake_http.route("POST", "/chat/completions", httpx.ConnectError("connection refused"))
    with pytest.raises(VendorCallFailure) as excinfo:
        await OpenAIClient(settings_stub, OPENAI_CONFIG).complete(
            [ChatMessage(role="user", content="hi")], CompletionOptions()
        )
    assert excinfo.value.code == "NETWORK_ERROR"
    assert "connection refused" in excinfo.value.message


@pytest.mark.asyncio
async def test_missing_api_key_fails_before_any_request(settings_stub, fake_http):
    settings_stub.openai_api_key = None
    with pytest.raises(ValidationError) as excinfo:
        await OpenAIClient(settings_stub, OPENAI_CONFIG).complete(
            [ChatMessage(role="user", content="hi")], CompletionOptions()
        )
    assert excinfo.value.code == "MISSING_API_KEY"
    assert fake_http.calls == []


# ---- Anthropic ----


@pytest.mark.asyncio
async def test_anthropic_system_field_and_base64_image(settings_stub, fake_http):
    fake_http.route(
        "POST",
        "/messages",
        payload={
            "content": [{"type": "text", "text": "hi "}, {"type": "text", "text": "there"}],
            "model": "claude-3-haiku-20240307",
            "usage": {"input_tokens": 7, "output_tokens": 3},
        },
    )
    messages = [
        ChatMessage(role="system", content="first"),
        ChatMessage(role="system", content="second"),
        ChatMessage(role="user", content=[TextPart("look"), ImagePart(url=build_data_url("image/webp", PNG_B64))]),
    ]
    res = await AnthropicClient(settings_stub, ANTHROPIC_CONFIG).complete(
        messages, CompletionOptions(model="claude-3-haiku-20240307", max_tokens=256)
    )

    call = fake_http.calls[0]
    assert call["url"] == "https://api.anthropic.com/v1/messages"
    assert call["headers"]["x-api-key"] == "sk-anthropic"
    assert call["headers"]["anthropic-version"] == "2023-06-01"
    payload = call["json"]
    assert payload["system"] == "first"
    assert [m["role"] for m in payload["messages"]] == ["user"]
    assert payload["messages"][0]["content"][1] == {
        "type": "image",
        "source": {"type": "base64", "media_type": "image/webp", "data": PNG_B64},
    }
    assert payload["max_tokens"] == 256
    assert res.text == "hi there"
    assert (res.usage.prompt_tokens, res.usage.completion_tokens, res.usage.total_tokens) == (7, 3, 10)


@pytest.mark.asyncio
async def test_anthropic_stream_reads_text_deltas(settings_stub, fake_http):
    lines = [
        "event: message_start",
        *_data_lines({"type": "message_start", "message": {"id": "msg"}}),
        "event: content_block_delta",
        *_data_lines({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "A"}}),
        *_data_lines({"type": "ping"}),
        *_data_lines({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "B"}}),
        *_data_lines({"type": "message_stop"}),
    ]
    fake_http.route("POST", "/messages", lines=lines)
    stream = AnthropicClient(settings_stub, ANTHROPIC_CONFIG).complete_stream(
        [ChatMessage(role="user", content="hi")], CompletionOptions()
    )
    chunks = [c async for c in stream]
    assert "".join(c.delta_text for c in chunks) == "AB"
    assert chunks[-1].done


@pytest.mark.asyncio
async def test_anthropic_stream_error_event_raises(settings_stub, fake_http):
    lines = _data_lines(
        {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "A"}},
        {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
    )
    fake_http.route("POST", "/messages", lines=lines)
    stream = AnthropicClient(settings_stub, ANTHROPIC_CONFIG).complete_stream(
        [ChatMessage(role="user", content="hi")], CompletionOptions()
    )
    received = []
    with pytest.raises(VendorCallFailure, match="Overloaded"):
        async for chunk in stream:
            received.append(chunk.delta_text)
    assert received == ["A"]


# ---- Google ----


@pytest.mark.asyncio
async def test_google_folds_system_into_first_user_turn(settings_stub, fake_http):
    fake_http.route(
        "POST",
        ":generateContent",
        payload={
            "candidates": [{"content": {"parts": [{"text": "fine"}], "role": "model"}}],
            "modelVersion": "gemini-2.5-pro-001",
        },
    )
    messages = [
        ChatMessage(role="system", content="Be brief"),
        ChatMessage(role="user", content="hello"),
        ChatMessage(role="assistant", content="hi"),
        ChatMessage(role="user", content=[TextPart("what"), ImagePart(url=PNG_URL)]),
    ]
    res = await GoogleClient(settings_stub, GOOGLE_CONFIG).complete(messages, CompletionOptions(temperature=0.2))

    call = fake_http.calls[0]
    assert call["url"] == "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.5-pro:generateContent"
    assert call["headers"]["x-goog-api-key"] == "g-key"
    contents = call["json"]["contents"]
    assert contents[0] == {"role": "user", "parts": [{"text": "System: Be brief\n\n"}, {"text": "hello"}]}
    assert contents[1] == {"role": "model", "parts": [{"text": "hi"}]}
    assert contents[2]["parts"][1] == {"inline_data": {"mime_type": "image/png", "data": PNG_B64}}
    assert call["json"]["generationConfig"] == {"maxOutputTokens": 4000, "temperature": 0.2}
    assert res.text == "fine"
    assert res.model == "gemini-2.5-pro-001"
    assert res.usage.total_tokens == 0


@pytest.mark.asyncio
async def test_google_stream_uses_sse_endpoint(settings_stub, fake_http):
    lines = _data_lines(
        {"candidates": [{"content": {"parts": [{"text": "one "}]}}]},
        {"candidates": [{"content": {"parts": [{"text": "two"}]}}], "usageMetadata": {"totalTokenCount": 9}},
    )
    fake_http.route("POST", ":streamGenerateContent", lines=lines)
    stream = GoogleClient(settings_stub, GOOGLE_CONFIG).complete_stream(
        [ChatMessage(role="user", content="count")], CompletionOptions(model="gemini-1.5-flash")
    )
    chunks = [c async for c in stream]
    assert [c.delta_text for c in chunks if not c.done] == ["one ", "two"]
    call = fake_http.calls[0]
    assert call["url"].endswith("/models/gemini-1.5-flash:streamGenerateContent")
    assert call["params"] == {"alt": "sse"}


@pytest.mark.asyncio
async def test_google_rejects_remote_image_urls(settings_stub, fake_http):
    messages = [ChatMessage(role="user", content=[ImagePart(url="https://example.com/a.png")])]
    with pytest.raises(ValidationError):
        await GoogleClient(settings_stub, GOOGLE_CONFIG).complete(messages, CompletionOptions())
    assert fake_http.calls == []


# ---- Mistral / Fireworks ----


@pytest.mark.asyncio
async def test_mistral_rejects_images_before_calling(settings_stub, fake_http):
    client = MistralClient(settings_stub, MISTRAL_CONFIG)
    assert client.supports_images() is False
    with pytest.raises(CapabilityError):
        await client.complete(_image_turn(), CompletionOptions())
    with pytest.raises(CapabilityError):
        client.complete_stream(_image_turn(), CompletionOptions())
    assert fake_http.calls == []


@pytest.mark.asyncio
async def test_mistral_flattens_text_parts(settings_stub, fake_http):
    fake_http.route("POST", "/chat/completions", payload={"choices": [{"message": {"content": "ok"}}]})
    await MistralClient(settings_stub, MISTRAL_CONFIG).complete(
        [ChatMessage(role="user", content=[TextPart("a"), TextPart("b")])], CompletionOptions()
    )
    call = fake_http.calls[0]
    assert call["url"] == "https://api.mistral.ai/v1/chat/completions"
    assert call["json"]["messages"] == [{"role": "user", "content": "a b"}]
    assert call["json"]["model"] == "mistral-large-latest"


@pytest.mark.asyncio
async def test_fireworks_prefixes_model_ids(settings_stub, fake_http):
    fake_http.route("POST", "/chat/completions", payload={"choices": [{"message": {"content": "ok"}}]})
    client = FireworksClient(settings_stub, FIREWORKS_CONFIG)
    await client.complete([ChatMessage(role="user", content="hi")], CompletionOptions())
    await client.complete(
        [ChatMessage(role="user", content="hi")],
        CompletionOptions(model="accounts/fireworks/models/qwen-2.5-72b-instruct"),
    )
    assert fake_http.calls[0]["json"]["model"] == "accounts/fireworks/models/llama-v3p1-70b-instruct"
    assert fake_http.calls[1]["json"]["model"] == "accounts/fireworks/models/qwen-2.5-72b-instruct"


def test_streaming_capability_is_checked_eagerly(settings_stub):
    config = dataclasses.replace(MISTRAL_CONFIG, supports_streaming=False)
    client = MistralClient(settings_stub, config)
    assert client.supports_streaming() is False
    with pytest.raises(CapabilityError):
        client.complete_stream([ChatMessage(role="user", content="hi")], CompletionOptions())


@pytest.mark.parametrize(
    "client_cls, config",
    [(OpenAIClient, OPENAI_CONFIG), (AnthropicClient, ANTHROPIC_CONFIG), (GoogleClient, GOOGLE_CONFIG)],
)
def test_image_payload_survives_native_round_trip(settings_stub, client_cls, config):
    client = client_cls(settings_stub, config)
    original = [
        ChatMessage(role="system", content="sys"),
        ChatMessage(role="user", content=(TextPart("describe"), ImagePart(url=PNG_URL))),
    ]
    parsed = client.parse_messages(client.format_messages(original))

    images = [p for m in parsed for p in m.parts if isinstance(p, ImagePart)]
    assert len(images) == 1
    assert images[0].data_url().mime_type == "image/png"
    assert images[0].data_url().data == PNG_B64
    assert parsed[0] == ChatMessage(role="system", content="sys")
