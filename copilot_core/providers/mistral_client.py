"""Mistral Provider 适配器（OpenAI 兼容协议，仅文本）。"""

from copilot_core.providers.openai_client import OpenAICompatibleClient


class MistralClient(OpenAICompatibleClient):
    name = "mistral"
