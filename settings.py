import logging
import os
import secrets

from dotenv import load_dotenv
from pydantic import BaseModel

# .env im Projektverzeichnis laden, falls vorhanden
ROOT = os.path.dirname(os.path.abspath(__file__))
env_path = os.path.join(ROOT, ".env")
if os.path.exists(env_path):
    load_dotenv(env_path)

logger = logging.getLogger(__name__)


def _jwt_secret() -> str:
    secret = (os.getenv("JWT_SECRET") or "").strip()
    if not secret:
        secret = secrets.token_urlsafe(48)
        logger.warning(
            "[WARN] JWT_SECRET fehlt. Temporäres Secret erzeugt; Tokens werden nach einem Neustart ungültig."
        )
    return secret


class Settings(BaseModel):
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./chat.db")
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8000"))

    JWT_SECRET: str = _jwt_secret()
    JWT_TTL_MINUTES: int = int(os.getenv("JWT_TTL_MINUTES", "1440"))
    BCRYPT_ROUNDS: int = int(os.getenv("BCRYPT_ROUNDS", "12"))

    ADMIN_USERNAME: str = os.getenv("ADMIN_USERNAME", "Admin01")
    ADMIN_PASSWORD: str = os.getenv("ADMIN_PASSWORD", "admin")

    CODE_GENERATION_ATTEMPTS: int = int(os.getenv("CODE_GENERATION_ATTEMPTS", "5"))
    CALL_RING_TIMEOUT: float = float(os.getenv("CALL_RING_TIMEOUT", "60"))

    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "*")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    def cors_origins(self) -> list[str]:
        origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        return origins or ["*"]


settings = Settings()
