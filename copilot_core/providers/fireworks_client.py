"""Fireworks Provider 适配器。

Fireworks 使用 OpenAI 兼容协议，但模型 ID 需要带上
accounts/fireworks/models/ 前缀；配置里只保存短名。
"""

from copilot_core.providers.openai_client import OpenAICompatibleClient

MODEL_PREFIX = "accounts/fireworks/models/"


class FireworksClient(OpenAICompatibleClient):
    name = "fireworks"

    def _model_id(self, model: str) -> str:
        if model.startswith("accounts/"):
            return model
        return f"{MODEL_PREFIX}{model}"
