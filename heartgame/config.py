"""
HeartGame configuration loaded from environment variables.
"""
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()


class Config:
    """Persistence configuration."""
    
    # Database
    DATABASE_PATH: Path = Path(os.getenv("DATABASE_PATH", "./data/heartgame.db"))
    DATABASE_NAME: str = os.getenv("DATABASE_NAME", "heartgame")
    DATABASE_TIMEOUT: float = float(os.getenv("DATABASE_TIMEOUT", "30.0"))
    DATABASE_SEED_FILE: Path | None = (
        Path(os.environ["DATABASE_SEED_FILE"]) if os.getenv("DATABASE_SEED_FILE") else None
    )
    
    # Retry policy for read paths and best-effort writes
    RETRY_MAX_ATTEMPTS: int = int(os.getenv("RETRY_MAX_ATTEMPTS", "3"))
    RETRY_BASE_DELAY: float = float(os.getenv("RETRY_BASE_DELAY", "0.1"))
    
    # Password hashing work factor
    BCRYPT_ROUNDS: int = int(os.getenv("BCRYPT_ROUNDS", "10"))
    
    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    
    @classmethod
    def ensure_directories(cls) -> None:
        """Create necessary directories if they don't exist."""
        cls.DATABASE_PATH.parent.mkdir(parents=True, exist_ok=True)


config = Config()
settings = config  # Alias used throughout the package
