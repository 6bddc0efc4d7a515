"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
优先级：显式传参 > 环境变量 > .env > config.yaml > 默认值。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("COMPANION_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
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


class CompanionSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Provider / 模型选择 ----
    default_provider: Literal["openai", "anthropic", "mock"] = Field(
        default="openai",
        description="默认 Provider；default_model 不在模型目录中时取它的第一个模型",
    )
    default_model: str = Field(
        default="gpt-3.5-turbo",
        description="默认模型 ID，必须存在于模型目录中",
    )

    # OpenAI 风格后端
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="OpenAI API 基础URL",
    )
    # Anthropic 风格后端
    anthropic_api_key: Optional[str] = Field(default=None, description="Anthropic API 密钥")
    anthropic_base_url: str = Field(
        default="https://api.anthropic.com/v1",
        description="Anthropic API 基础URL",
    )
    anthropic_version: str = Field(default="2023-06-01", description="anthropic-version 请求头")
    anthropic_default_max_tokens: int = Field(
        default=1024,
        ge=1,
        description="请求未指定 max_tokens 时使用的值（该后端要求必填）",
    )
    mock_latency_seconds: float = Field(default=0.0, ge=0.0, description="Mock Provider 模拟延迟（秒）")

    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 上下文预算 ----
    token_estimator: Literal["heuristic", "regex"] = Field(
        default="heuristic",
        description="token 估算策略：heuristic(字符/4) 或 regex(分类计数)",
    )
    summary_trigger_ratio: float = Field(
        default=0.7,
        gt=0.0,
        le=1.0,
        description="历史 token 超过上下文窗口的该比例时启用摘要",
    )
    summary_keep_recent: int = Field(default=5, ge=0, description="首次摘要时保留原文的最近消息数")
    summary_max_tokens: int = Field(default=300, ge=1, description="摘要请求的 max_tokens")
    title_max_tokens: int = Field(default=10, ge=1, description="标题请求的 max_tokens")
    title_max_length: int = Field(default=50, ge=1, description="AI 标题允许的最大字符数")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("openai_api_key", "anthropic_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
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


settings = CompanionSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = CompanionSettings
