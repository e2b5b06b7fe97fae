import os
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _id_list(name: str) -> list:
    return [part.strip() for part in os.getenv(name, "").split(",") if part.strip()]


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Users promoted to admin whenever the database is initialised
    admin_user_ids: list = field(default_factory=lambda: _id_list("ADMIN_USER_IDS"))

    # Database / storage
    storage_dir: str = os.getenv("LIBRARY_STORAGE_DIR", os.path.join(os.getcwd(), "storage"))
    max_upload_size: int = int(os.getenv("MAX_UPLOAD_SIZE", "10485760"))  # 10MB
    allowed_resource_extensions: list = field(default_factory=lambda: [".pdf"])

    # Redis cache
    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    cache_ttl: int = int(os.getenv("CACHE_TTL", "300"))

    # Circulation rules
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))
    max_renewals: int = int(os.getenv("MAX_RENEWALS", "2"))
    late_fee_per_day: int = int(os.getenv("LATE_FEE_PER_DAY", "5"))
    currency_symbol: str = os.getenv("CURRENCY_SYMBOL", "₹")

    # LLM providers
    llm_provider: str = os.getenv("LLM_PROVIDER", "A4F")
    llm_model: str = os.getenv("LLM_MODEL", "GROK_4")
    llm_chat_provider: str = os.getenv("LLM_CHAT_PROVIDER", "GEMINI")
    llm_chat_model: str = os.getenv("LLM_CHAT_MODEL", "FLASH_2_5")
    llm_temperature: float = float(os.getenv("LLM_TEMPERATURE", "0.7"))
    llm_max_tokens: int = int(os.getenv("LLM_MAX_TOKENS", "2048"))
    llm_timeout: float = float(os.getenv("LLM_TIMEOUT", "30"))

    a4f_api_key: Optional[str] = os.getenv("A4F_API_KEY")
    gemini_api_key: Optional[str] = os.getenv("GEMINI_API_KEY")
    groq_api_key: Optional[str] = os.getenv("GROQ_API_KEY")
    openrouter_api_key: Optional[str] = os.getenv("OPENROUTER_API_KEY")
    llm7_api_key: Optional[str] = os.getenv("LLM7_API_KEY")

    cover_image_model: str = os.getenv("COVER_IMAGE_MODEL", "provider-4/qwen-image")
    cover_image_size: str = os.getenv("COVER_IMAGE_SIZE", "1024x1792")

    # Application
    app_name: str = os.getenv("APP_NAME", "LibraLink")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _flag("DEBUG", "False")

    # Feature flags
    enable_ai_features: bool = _flag("ENABLE_AI_FEATURES", "True")
    enable_chatbot: bool = _flag("ENABLE_CHATBOT", "True")


settings = Settings()
