"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口与公共 HTTP 实现 (base)。
- 维护 Provider 静态配置与注册表 (registry)。
- 提供各厂商的具体实现 (openai_client、anthropic_client、google_client、
  mistral_client、fireworks_client)。
"""

from typing import Optional

from copilot_core.config.settings import settings
from copilot_core.providers.base import ProviderAdapter
from copilot_core.providers.registry import ProviderRegistry


def create_provider(name: Optional[str] = None) -> ProviderAdapter:
    """根据名称（或别名）创建 Provider 实例，默认取配置中的 provider。"""

    return ProviderRegistry(settings).resolve(name or settings.default_provider)

