import io
import json as jsonlib

import pytest
from PIL import Image


class SettingsStub:
    default_provider = "openai"
    default_model = None
    max_tokens = 4000
    temperature = 0.7
    http_timeout = None

    openai_api_key = "sk-openai"
    anthropic_api_key = "sk-anthropic"
    google_api_key = "g-key"
    mistral_api_key = "m-key"
    fireworks_api_key = "fw-key"

    knowledge_path = "./knowledge_base"
    max_file_size = 10 * 1024 * 1024
    allowed_file_types = ["pdf", "docx", "txt", "md", "jpg", "jpeg", "png", "gif", "html"]

    supabase_url = "https://proj.supabase.co"
    supabase_key = "service-key"
    supabase_bucket = "flows"
    supabase_analysis_table = "image_analysis"

    max_history_messages = 20
    storage_root = ".storage"


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None, lines=None):
        self.status_code = status_code
        self._payload = payload
        self._lines = list(lines or [])
        if text is None:
            text = jsonlib.dumps(payload) if payload is not None else ""
        self.text = text

    def json(self):
        return self._payload

    async def aiter_lines(self):
        for line in self._lines:
            yield line

    async def aread(self):
        return self.text.encode("utf-8")


class FakeHttp:
    """按 (method, url 片段) 路由的假 httpx.AsyncClient 后端，记录所有调用。"""

    def __init__(self):
        self.calls = []
        self.client_kwargs = []
        self._routes = []

    @staticmethod
    def response(status_code=200, payload=None, text=None, lines=None):
        return FakeResponse(status_code=status_code, payload=payload, text=text, lines=lines)

    def route(self, method, fragment, response=None, **kw):
        """response 可以是 FakeResponse、异常实例或 handler(call)；省略时用 kw 构造 FakeResponse。"""
        if response is None:
            response = self.response(**kw)
        self._routes.append((method.upper(), fragment, response))

    def respond(self, method, url, **kwargs):
        call = {"method": method.upper(), "url": url, **kwargs}
        self.calls.append(call)
        for m, fragment, response in self._routes:
            if m == call["method"] and fragment in url:
                if isinstance(response, Exception):
                    raise response
                if callable(response):
                    response = response(call)
                return response
        raise AssertionError(f"unexpected request {method} {url}")

    def client_class(self):
        fake = self

        class StreamContext:
            def __init__(self, method, url, kwargs):
                self._args = (method, url, kwargs)

            async def __aenter__(self):
                method, url, kwargs = self._args
                return fake.respond(method, url, **kwargs)

            async def __aexit__(self, *a):
                return False

        class Client:
            def __init__(self, *a, **kw):
                fake.client_kwargs.append(kw)

            async def __aenter__(self):
                return self

            async def __aexit__(self, *a):
                return False

            async def post(self, url, **kw):
                return fake.respond("POST", url, **kw)

            async def get(self, url, **kw):
                return fake.respond("GET", url, **kw)

            async def delete(self, url, **kw):
                return fake.respond("DELETE", url, **kw)

            async def request(self, method, url, **kw):
                return fake.respond(method, url, **kw)

            def stream(self, method, url, **kw):
                return StreamContext(method, url, kw)

        return Client


class FakeVisionProvider:
    """支持图片的假 Provider：按提示词返回固定回答，url 命中 fail_on 时抛错。"""

    name = "fake-vision"

    def __init__(self, fail_on=()):
        self.fail_on = tuple(fail_on)
        self.calls = []

    def supports_images(self):
        return True

    async def complete(self, messages, options):
        from copilot_core.domain.exceptions import VendorCallFailure
        from copilot_core.domain.models import NormalizedCompletion, TokenUsage
        from copilot_core.services import image_analysis as ia

        prompt, image = messages[0].parts
        self.calls.append((image.url, prompt.text, options.max_tokens))
        if any(fragment in image.url for fragment in self.fail_on):
            raise VendorCallFailure(code="API_ERROR", message="vision down")
        answers = {
            ia.TEXT_PROMPT: "  Welcome back  ",
            ia.DESCRIPTION_PROMPT: "A login screen with a Sign in button",
            ia.UI_ELEMENTS_PROMPT: '```json\n[{"type": "button", "text": "Sign in"}]\n```',
            ia.COLORS_PROMPT: 'Dominant colors: ["#112233", "#445566"]',
        }
        return NormalizedCompletion(text=answers[prompt.text], usage=TokenUsage(), model="v1", provider=self.name)


@pytest.fixture
def settings_stub():
    return SettingsStub()


@pytest.fixture
def fake_http(monkeypatch):
    fake = FakeHttp()
    monkeypatch.setattr("httpx.AsyncClient", fake.client_class())
    return fake


@pytest.fixture
def png_bytes():
    buf = io.BytesIO()
    Image.new("RGB", (4, 3), color=(200, 30, 30)).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def vision_provider():
    return FakeVisionProvider
