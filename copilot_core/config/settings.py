"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置。
各厂商的 API Key 是否存在决定了该 Provider 是否“可用”。
"""

import os
import warnings
from pathlib import Path
from typing import Annotated, Any, Dict, List, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("COPILOT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- LLM 默认参数 ----
    default_provider: str = Field(
        default="openai",
        description="调用方未指定时使用的 Provider 名称",
    )
    default_model: Optional[str] = Field(
        default=None,
        description="默认 Provider 使用的模型；为空时取该 Provider 的推荐模型",
    )
    max_tokens: int = Field(default=4000, ge=1, description="默认最大输出 token 数")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="默认生成温度")

    # ---- 各厂商凭据 ----
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_base_url: str = Field(default="https://api.openai.com/v1")
    openai_model: Optional[str] = None

    anthropic_api_key: Optional[str] = Field(default=None, description="Anthropic API 密钥")
    anthropic_base_url: str = Field(default="https://api.anthropic.com/v1")
    anthropic_model: Optional[str] = None

    google_api_key: Optional[str] = Field(default=None, description="Google Gemini API 密钥")
    google_base_url: str = Field(default="https://generativelanguage.googleapis.com/v1beta")
    google_model: Optional[str] = None

    mistral_api_key: Optional[str] = Field(default=None, description="Mistral API 密钥")
    mistral_base_url: str = Field(default="https://api.mistral.ai/v1")
    mistral_model: Optional[str] = None

    fireworks_api_key: Optional[str] = Field(default=None, description="Fireworks API 密钥")
    fireworks_base_url: str = Field(default="https://api.fireworks.ai/inference/v1")
    fireworks_model: Optional[str] = None

    # 为空表示核心层不设置超时，由外层传输层决定
    http_timeout: Optional[float] = Field(default=None, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- 知识库 ----
    knowledge_base_type: str = Field(default="file", description="file 或 supabase")
    knowledge_path: str = Field(default="./knowledge_base", description="本地知识库目录")
    max_file_size: int = Field(default=10 * 1024 * 1024, ge=1, description="单个文件最大字节数")
    allowed_file_types: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["pdf", "docx", "txt", "md", "jpg", "jpeg", "png", "gif", "html"],
        description="允许上传的扩展名",
    )
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    supabase_bucket: str = Field(default="flows")
    supabase_analysis_table: str = Field(default="image_analysis")

    # ---- 会话与存储 ----
    max_history_messages: int = Field(default=20, ge=2, le=200, description="每个会话保留的最大消息数")
    storage_root: str = Field(default=".storage", description="会话日志存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("allowed_file_types", mode="before")
    @classmethod
    def split_file_types(cls, v: Any) -> Any:
        # 环境变量中允许写成 "pdf,docx,txt"
        if isinstance(v, str):
            return [item.strip().lower().lstrip(".") for item in v.split(",") if item.strip()]
        return v

    @field_validator("knowledge_base_type")
    @classmethod
    def validate_kb_type(cls, v: str) -> str:
        v = v.lower()
        if v not in {"file", "supabase"}:
            raise ValueError("knowledge_base_type must be 'file' or 'supabase'")
        return v

    @field_validator("max_history_messages")
    @classmethod
    def validate_history_limit(cls, v: int) -> int:
        # 按轮次截断，奇数会让历史以 assistant 消息开头
        if v % 2:
            raise ValueError("max_history_messages must be even (user/assistant pairs)")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
