import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

CORPUS_STRATEGIES = ("cached", "live")


def _csv(raw: str) -> List[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


@dataclass
class Settings:
    database_url: str = "sqlite:///./backstage.db"
    jwt_secret: str = "change-me"
    jwt_exp_minutes: int = 60 * 24  # 24 hours
    openai_api_key: Optional[str] = None
    llm_model: str = "gpt-5-nano-2025-08-07"
    upload_dir: str = "uploaded_files"
    max_upload_bytes: int = 50 * 1024 * 1024
    corpus_strategy: str = "cached"
    public_base_url: str = ""
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def __post_init__(self):
        if self.corpus_strategy not in CORPUS_STRATEGIES:
            raise ValueError(
                f"CORPUS_STRATEGY must be one of {', '.join(CORPUS_STRATEGIES)}, got {self.corpus_strategy!r}"
            )

    @classmethod
    def from_env(cls, env_file: str = ".env") -> "Settings":
        load_dotenv(env_file)
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            jwt_secret=os.getenv("JWT_SECRET", cls.jwt_secret),
            jwt_exp_minutes=int(os.getenv("JWT_EXP_MINUTES", str(cls.jwt_exp_minutes))),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            llm_model=os.getenv("LLM_MODEL", cls.llm_model),
            upload_dir=os.getenv("UPLOAD_DIR", os.path.join(os.getcwd(), cls.upload_dir)),
            max_upload_bytes=int(os.getenv("MAX_UPLOAD_BYTES", str(cls.max_upload_bytes))),
            corpus_strategy=os.getenv("CORPUS_STRATEGY", cls.corpus_strategy).strip().lower(),
            public_base_url=os.getenv("PUBLIC_BASE_URL", "").rstrip("/"),
            cors_origins=_csv(os.getenv("CORS_ORIGINS", "http://localhost:3000")),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            log_file=os.getenv("LOG_FILE") or None,
        )
