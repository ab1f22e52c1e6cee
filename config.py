import os
from dataclasses import dataclass, field
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()

TWO_YEARS_S = 60 * 60 * 24 * 365 * 2


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


@dataclass
class Settings:
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db: str = "prd_workspace"

    redis_host: Optional[str] = None
    redis_port: int = 6379
    redis_username: Optional[str] = None
    redis_password: Optional[str] = None

    openai_model: str = "gpt-4o"
    openai_fast_model: str = "gpt-4o-mini"
    llm_timeout_s: int = 60
    flow_checkpointer: str = "memory"

    upload_dir: str = "uploads"
    upload_max_bytes: int = 10 * 1024 * 1024
    upload_signing_key: str = "dev-signing-key"
    signed_url_ttl_s: int = TWO_YEARS_S

    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            mongodb_uri=os.getenv("MONGODB_URI", "mongodb://localhost:27017"),
            mongodb_db=os.getenv("MONGODB_DB", "prd_workspace"),
            redis_host=os.getenv("REDIS_HOST") or None,
            redis_port=_int_env("REDIS_PORT", 6379),
            redis_username=os.getenv("REDIS_USERNAME") or None,
            redis_password=os.getenv("REDIS_PASSWORD") or None,
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o"),
            openai_fast_model=os.getenv("OPENAI_FAST_MODEL", "gpt-4o-mini"),
            llm_timeout_s=_int_env("LLM_TIMEOUT_S", 60),
            flow_checkpointer=os.getenv("FLOW_CHECKPOINTER", "memory").lower(),
            upload_dir=os.getenv("UPLOAD_DIR", "uploads"),
            upload_max_bytes=_int_env("UPLOAD_MAX_BYTES", 10 * 1024 * 1024),
            upload_signing_key=os.getenv("UPLOAD_SIGNING_KEY", "dev-signing-key"),
            signed_url_ttl_s=_int_env("SIGNED_URL_TTL_S", TWO_YEARS_S),
            cors_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()],
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
