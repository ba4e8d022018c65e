from pydantic_settings import BaseSettings
from typing import List, Any, Optional
import json
from pathlib import Path


def parse_csv_list(v: Any) -> List[str]:
    """Parse a list setting from a JSON array or a comma-separated string"""
    if isinstance(v, list):
        return v
    if isinstance(v, str):
        # Try JSON parsing first
        if v.startswith('['):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        # Fall back to comma-separated
        return [item.strip() for item in v.split(',') if item.strip()]
    return []


class Settings(BaseSettings):
    """Application settings - all configurable via environment variables"""

    # ==========================================
    # Application
    # ==========================================
    APP_NAME: str = "Shipyard"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    API_VERSION: str = "v1"

    # Server Configuration
    SERVER_HOST: str = "0.0.0.0"
    SERVER_PORT: int = 8000

    # ==========================================
    # Database
    # ==========================================
    DATABASE_URL: str
    DB_ECHO: bool = False

    # ==========================================
    # Redis / Conversation cache
    # ==========================================
    REDIS_URL: str = "redis://localhost:6379/0"
    CONVERSATION_CACHE_BACKEND: str = "memory"  # "memory" or "redis"
    CONVERSATION_CACHE_TTL: int = 86400  # 24 hours, redis backend only

    # ==========================================
    # Authentication
    # ==========================================
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    ELEVATED_ROLES_STR: str = "staff"

    @property
    def ELEVATED_ROLES(self) -> List[str]:
        """Roles that bypass message and app quotas"""
        return parse_csv_list(self.ELEVATED_ROLES_STR)

    # ==========================================
    # Upstream agent
    # ==========================================
    AGENT_HOST: str = "http://localhost:8001"
    AGENT_API_SECRET: str = ""
    AGENT_CONNECT_TIMEOUT: float = 30.0  # seconds
    AGENT_READ_TIMEOUT: Optional[float] = None  # builds may stream indefinitely
    DEFAULT_MAX_ITERATIONS: int = 3

    # ==========================================
    # Usage limits
    # ==========================================
    DAILY_MESSAGE_LIMIT: int = 50
    USER_APPS_LIMIT: int = 10  # non-deleted apps per user
    DAILY_APPS_LIMIT: int = 100  # apps created platform-wide per UTC day
    MAX_PROMPT_LENGTH: int = 10000

    # ==========================================
    # Active sessions
    # ==========================================
    MAX_ACTIVE_CONNECTIONS: int = 50
    SESSION_INACTIVITY_MINUTES: int = 30
    SESSION_CLEANUP_INTERVAL_SECONDS: int = 300  # 5 minutes

    # ==========================================
    # GitHub
    # ==========================================
    GITHUB_API_URL: str = "https://api.github.com"
    GITHUB_WEB_URL: str = "https://github.com"
    GITHUB_DEFAULT_BRANCH: str = "main"
    DEFAULT_COMMIT_MESSAGE: str = "feat: update"

    # ==========================================
    # Deployment
    # ==========================================
    DEPLOY_SERVICE_URL: str = "http://localhost:8002"
    DEPLOY_SERVICE_TOKEN: str = ""
    DEPLOY_TIMEOUT: float = 600.0  # seconds

    # ==========================================
    # CORS (stored as comma-separated string, parsed to list)
    # ==========================================
    CORS_ORIGINS_STR: str = "http://localhost:3000,http://127.0.0.1:3000"

    @property
    def CORS_ORIGINS(self) -> List[str]:
        """Parse CORS origins from comma-separated string"""
        return parse_csv_list(self.CORS_ORIGINS_STR)

    # ==========================================
    # Logging
    # ==========================================
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""
    LOGS_DIR: str = "logs/streams"  # SSE/diff dumps, development only

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields in .env that aren't defined in Settings

    @property
    def LOGS_PATH(self) -> Path:
        return Path(self.LOGS_DIR)

    def is_dev_mode(self) -> bool:
        """Check if running in development mode"""
        return self.ENVIRONMENT == "development" or self.DEBUG

    def get_commit_url(self, owner: str, repo: str, sha: str) -> str:
        """Public URL of a commit on GitHub"""
        return f"{self.GITHUB_WEB_URL}/{owner}/{repo}/commit/{sha}"


# Create settings instance
settings = Settings()
