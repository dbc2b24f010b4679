from pathlib import Path
from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    """Application settings with validation"""
    
    # Storage Configuration
    BASE_DIR: Path = Path(__file__).parent.parent.parent
    DATA_DIR: Path = BASE_DIR / "data"
    LOG_DIR: Path = BASE_DIR / "logs"
    DB_PATH: Path = DATA_DIR / "activity_ledger.db"
    DEVICE_ID: str = "local"
    
    # Recorder Configuration
    IDLE_THRESHOLD_SECONDS: int = Field(default=0, ge=0)
    MAX_GAP_SECONDS: int = Field(default=120, ge=1)
    DEBOUNCE_MS: int = Field(default=1000, ge=0)
    
    # Analytics Configuration
    DAY_START_HOUR: int = Field(default=4, ge=0, le=23)
    TIMEZONE: str = "UTC"
    EPISODE_GAP_MINUTES: int = Field(default=8, ge=1, le=120)
    EPISODE_BIN_SECONDS: int = Field(default=30, ge=5, le=300)
    PATTERN_STALE_MINUTES: int = Field(default=60, ge=1)
    TOP_CONTEXT_LIMIT: int = Field(default=8, ge=1)
    
    # Privacy Configuration
    EXCLUDED_KEYWORDS: List[str] = Field(default_factory=list)
    
    # Web Configuration
    WEB_PORT: int = 8000
    WEB_HOST: str = "127.0.0.1"
    
    # Development Configuration
    DEBUG: bool = False
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )
    
    def validate_paths(self) -> None:
        """Ensure all required paths exist"""
        for path in [self.DATA_DIR, self.LOG_DIR, self.DB_PATH.parent]:
            path.mkdir(parents=True, exist_ok=True)

    def excluded_keywords(self) -> List[str]:
        """Lower-cased, non-empty privacy keywords"""
        return [k.strip().lower() for k in self.EXCLUDED_KEYWORDS if k and k.strip()]

settings = Settings()
