"""Provider 静态配置与注册表。

本模块集中维护每个厂商的：

- 显示名称、默认 base_url、支持的模型列表与推荐模型；
- 能力（图片输入、流式输出）；
- 别名（如 "gemini" -> google，"claude" -> anthropic）。

ProviderRegistry 在此基础上负责把名称解析为适配器实例，
并根据配置中的 API Key 报告哪些 Provider 当前可用。
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Dict, List, Mapping, Optional, Tuple

from copilot_core.domain.exceptions import UnsupportedProvider
from copilot_core.domain.models import ProviderCapabilities

if TYPE_CHECKING:
    from copilot_core.providers.base import ProviderAdapter


@dataclass(frozen=True)
class ProviderConfig:
    """某个 Provider 的整体静态配置。"""

    name: str
    display_name: str
    base_url: str
    models: Tuple[str, ...]
    best_model: str
    description: str = ""
    supports_images: bool = False
    supports_streaming: bool = True
    aliases: Tuple[str, ...] = field(default_factory=tuple)


OPENAI_CONFIG = ProviderConfig(
    name="openai",
    display_name="OpenAI",
    base_url="https://api.openai.com/v1",
    models=("gpt-4o", "gpt-4-turbo", "gpt-4", "gpt-3.5-turbo", "gpt-4-vision-preview"),
    best_model="gpt-4o",
    description="OpenAI's GPT-4o model.",
    supports_images=True,
    aliases=("gpt", "chatgpt"),
)

ANTHROPIC_CONFIG = ProviderConfig(
    name="anthropic",
    display_name="Anthropic",
    base_url="https://api.anthropic.com/v1",
    models=(
        "claude-3-5-sonnet-20241022",
        "claude-3-5-haiku-20241022",
        "claude-3-opus-20240229",
        "claude-3-sonnet-20240229",
        "claude-3-haiku-20240307",
    ),
    best_model="claude-3-5-sonnet-20241022",
    description="Anthropic's balanced Claude model.",
    supports_images=True,
    aliases=("claude",),
)

GOOGLE_CONFIG = ProviderConfig(
    name="google",
    display_name="Google",
    base_url="https://generativelanguage.googleapis.com/v1beta",
    models=("gemini-2.5-pro", "gemini-2.0-flash-exp", "gemini-1.5-pro", "gemini-1.5-flash", "gemini-pro"),
    best_model="gemini-2.5-pro",
    description="Google's Gemini models.",
    supports_images=True,
    aliases=("gemini",),
)

MISTRAL_CONFIG = ProviderConfig(
    name="mistral",
    display_name="Mistral",
    base_url="https://api.mistral.ai/v1",
    models=("mistral-large-latest", "mistral-medium-latest", "mistral-small-latest"),
    best_model="mistral-large-latest",
    description="Mistral's large model.",
    supports_images=False,
    aliases=("mistralai", "mixtral"),
)

FIREWORKS_CONFIG = ProviderConfig(
    name="fireworks",
    display_name="Fireworks",
    base_url="https://api.fireworks.ai/inference/v1",
    models=("llama-v3p1-70b-instruct", "llama-v3p1-8b-instruct", "qwen-2.5-72b-instruct", "qwen-2.5-14b-instruct"),
    best_model="llama-v3p1-70b-instruct",
    description="Fireworks' high-performance open models.",
    supports_images=False,
    aliases=("fireworks-ai", "fw"),
)


PROVIDER_CONFIGS: Mapping[str, ProviderConfig] = {
    cfg.name: cfg
    for cfg in (OPENAI_CONFIG, ANTHROPIC_CONFIG, GOOGLE_CONFIG, MISTRAL_CONFIG, FIREWORKS_CONFIG)
}


def canonical_name(name: str) -> str:
    """把名称或别名解析为规范 Provider 名，名称不区分大小写。"""

    key = (name or "").strip().lower()
    for cfg in PROVIDER_CONFIGS.values():
        if key == cfg.name or key in cfg.aliases:
            return cfg.name
    raise UnsupportedProvider(code="UNSUPPORTED_PROVIDER", message=f"Unsupported provider: {name}")


def get_provider_config(name: str) -> ProviderConfig:
    return PROVIDER_CONFIGS[canonical_name(name)]


def _default_factories() -> Dict[str, Callable[..., "ProviderAdapter"]]:
    from copilot_core.providers.anthropic_client import AnthropicClient
    from copilot_core.providers.fireworks_client import FireworksClient
    from copilot_core.providers.google_client import GoogleClient
    from copilot_core.providers.mistral_client import MistralClient
    from copilot_core.providers.openai_client import OpenAIClient

    return {
        "openai": OpenAIClient,
        "anthropic": AnthropicClient,
        "google": GoogleClient,
        "mistral": MistralClient,
        "fireworks": FireworksClient,
    }


class ProviderRegistry:
    """名称 -> 适配器实例的注册表。

    适配器按需构造并缓存；resolve 不会发起任何网络请求。
    """

    def __init__(
        self,
        settings,
        factories: Optional[Mapping[str, Callable[..., "ProviderAdapter"]]] = None,
    ):
        self._settings = settings
        self._factories = dict(factories or _default_factories())
        self._instances: Dict[str, "ProviderAdapter"] = {}

    def resolve(self, name: str) -> "ProviderAdapter":
        key = canonical_name(name)
        if key not in self._factories:
            raise UnsupportedProvider(code="UNSUPPORTED_PROVIDER", message=f"Unsupported provider: {name}")
        if key not in self._instances:
            self._instances[key] = self._factories[key](self._settings, PROVIDER_CONFIGS[key])
        return self._instances[key]

    def is_configured(self, name: str) -> bool:
        key = canonical_name(name)
        return bool(getattr(self._settings, f"{key}_api_key", None))

    def capabilities(self, name: str) -> ProviderCapabilities:
        cfg = get_provider_config(name)
        return ProviderCapabilities(
            name=cfg.name,
            display_name=cfg.display_name,
            supports_images=cfg.supports_images,
            supports_streaming=cfg.supports_streaming,
            models=list(cfg.models),
            is_configured=self.is_configured(cfg.name),
            best_model=cfg.best_model,
            description=cfg.description,
        )

    def list_all(self) -> List[ProviderCapabilities]:
        return [self.capabilities(name) for name in PROVIDER_CONFIGS]

    def list_configured(self) -> List[ProviderCapabilities]:
        """只返回当前已配置 API Key 的 Provider，顺序与 PROVIDER_CONFIGS 一致。"""

        return [caps for caps in self.list_all() if caps.is_configured]
