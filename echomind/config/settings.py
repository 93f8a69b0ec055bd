"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置，优先级：
初始化参数 > 环境变量 > .env > config.yaml > 默认值。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("ECHOMIND_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path.home() / ".config" / "echomind" / "config.yaml",
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


class EchomindSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Provider 相关配置 ----
    default_provider: str = Field(
        default="chat",
        description="默认使用的 Provider 名称，例如 openai、claude、ollama，也可以是自定义 URL",
    )
    default_model: str = Field(default="gpt-3.5-turbo", description="默认模型名")
    endpoint: Optional[str] = Field(default=None, description="自定义 endpoint，覆盖 Provider 默认 URL")

    # 通用 key，未配置 Provider 专属 key 时使用
    echomind_api_key: Optional[str] = Field(default=None, description="通用 API 密钥")
    chatanywhere_api_key: Optional[str] = Field(default=None)
    openai_api_key: Optional[str] = Field(default=None)
    claude_api_key: Optional[str] = Field(default=None)
    grok_api_key: Optional[str] = Field(default=None)
    mistral_api_key: Optional[str] = Field(default=None)
    cohere_api_key: Optional[str] = Field(default=None)
    gemini_api_key: Optional[str] = Field(default=None)
    custom_api_key: Optional[str] = Field(default=None)

    # ---- 请求默认参数 ----
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, ge=1)
    top_p: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    top_k: Optional[int] = Field(default=None, ge=1)
    stream: bool = Field(default=False, description="默认是否流式输出")
    system_prompt: Optional[str] = Field(default=None)
    user_agent: str = Field(default="echomind/0.3.0")

    # ---- 存储与安全 ----
    storage_root: str = Field(default=".echomind", description="存储根目录")
    max_context_messages: int = Field(default=20, ge=1, le=500, description="最大上下文消息数")
    encrypt_history: bool = Field(default=False, description="是否加密会话文件")
    history_passphrase: Optional[str] = Field(default=None, description="会话加密口令")
    lock_timeout: float = Field(default=5.0, gt=0.0, description="会话文件锁最长等待时间（秒）")
    stale_lock_seconds: float = Field(default=60.0, gt=0.0, description="超过该时长的锁文件视为残留")

    # ---- 缓存 ----
    cache_ttl_seconds: float = Field(default=300.0, ge=0.0, description="非流式回复缓存 TTL，0 表示关闭")
    cache_max_entries: int = Field(default=100, ge=1)

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO")
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

    @field_validator(
        "echomind_api_key",
        "chatanywhere_api_key",
        "openai_api_key",
        "claude_api_key",
        "grok_api_key",
        "mistral_api_key",
        "cohere_api_key",
        "gemini_api_key",
        "custom_api_key",
    )
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            v = v.strip() or None
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

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

    def api_key_for(self, provider_id: str) -> Optional[str]:
        """返回某个 Provider 的 key：专属 key 优先，其次通用 key。"""

        specific = getattr(self, f"{provider_id.lower()}_api_key", None)
        return specific or self.echomind_api_key


settings = EchomindSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = EchomindSettings
