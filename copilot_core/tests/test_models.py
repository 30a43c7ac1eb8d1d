import pytest

from copilot_core.domain.exceptions import ValidationError
from copilot_core.domain.models import (
    ChatMessage,
    ImagePart,
    TextPart,
    coerce_content,
    is_data_url,
    parse_data_url,
)
from copilot_core.prompts import load_system_prompt


def test_parse_data_url_keeps_mime_and_payload():
    parsed = parse_data_url("data:image/webp;base64,UklGRg==")
    assert parsed.mime_type == "image/webp"
    assert parsed.data == "UklGRg=="
    assert parsed.to_url() == "data:image/webp;base64,UklGRg=="


def test_parse_data_url_without_mime_defaults_to_octet_stream():
    assert parse_data_url("data:;base64,AAAA").mime_type == "application/octet-stream"


def test_parse_data_url_rejects_remote_urls():
    assert not is_data_url("https://example.com/a.png")
    with pytest.raises(ValidationError) as excinfo:
        parse_data_url("https://example.com/a.png")
    assert excinfo.value.code == "INVALID_IMAGE"


def test_coerce_content_accepts_api_style_parts():
    content = coerce_content(
        [
            {"type": "text", "text": "Compare these"},
            {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA", "detail": "high"}},
            {"type": "image_url", "image_url": "https://cdn.example.com/b.png"},
            {"type": "image", "data": "BBBB", "mime_type": "image/gif"},
        ]
    )
    assert content == (
        TextPart("Compare these"),
        ImagePart(url="data:image/png;base64,AAAA", detail="high"),
        ImagePart(url="https://cdn.example.com/b.png"),
        ImagePart(url="data:image/gif;base64,BBBB"),
    )
    assert coerce_content("plain") == "plain"


@pytest.mark.parametrize("raw", [42, [{"type": "audio"}], ["loose string"], [{"type": "image"}]])
def test_coerce_content_rejects_unknown_shapes(raw):
    with pytest.raises(ValidationError):
        coerce_content(raw)


def test_message_text_ignores_images():
    message = ChatMessage(
        role="user",
        content=[TextPart("left"), ImagePart(url="data:image/png;base64,AAAA"), TextPart("right")],
    )
    assert isinstance(message.content, tuple)
    assert message.text() == "left right"
    assert message.has_images()
    assert not ChatMessage(role="user", content="hi").has_images()
    assert ChatMessage(role="user", content="hi").parts == (TextPart("hi"),)


def test_default_system_prompt_is_bundled():
    prompt = load_system_prompt()
    assert prompt
    assert not prompt.endswith("\n")
