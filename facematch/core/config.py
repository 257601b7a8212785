"""Configuration settings for the face matching service."""
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings.

    These settings are loaded from environment variables with the following precedence:
    1. Environment variables
    2. .env file
    3. Default values

    Attributes:
        DATABASE_URL: SQLAlchemy async URL of the face record store
        PHOTO_LIBRARY_DIR: Directory scanned by the local photo library source
        OBSERVATION_DISTANCE_THRESHOLD: Max model-native distance for a match
        COSINE_SIMILARITY_THRESHOLD: Min cosine similarity for a match
        SEARCH_INITIAL_CEILING: Images extracted before a search returns its count
    """
    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_prefix="",  # No prefix for environment variables
        env_nested_delimiter="__"  # Use double underscore for nested settings
    )

    # Core Settings
    PROJECT_NAME: str = "Face Matching Service"
    VERSION: str = "0.1.0"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"

    # CORS Settings
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    @property
    def cors_origins(self) -> List[str]:
        """Get list of allowed origins."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    # Record store
    DATABASE_URL: str = "sqlite+aiosqlite:///./facematch.db"
    DATABASE_ECHO: bool = False

    # Photo library
    PHOTO_LIBRARY_DIR: str = "./photos"
    IMAGE_LOAD_TIMEOUT: float = 10.0  # seconds to wait for a non-degraded image
    PROCESSING_TARGET_SIZE: int = 1920  # longest side handed to the detector

    # Face analysis backend
    MODEL_NAME: str = "buffalo_l"
    MODEL_CACHE_DIR: str = ".model_cache"
    DETECTION_SIZE: int = 640
    MAX_FACES_PER_IMAGE: int = 20
    MAX_IMAGE_PIXELS: int = 1920 * 1920

    # Quality filter
    MIN_FACE_CONFIDENCE: float = 0.3
    MIN_FACE_SIZE_RATIO: float = 0.05  # of the shorter image side
    MIN_QUALITY_SCORE: float = 0.3
    MAX_POSE_DEVIATION: float = 60.0  # |yaw| + |pitch| in degrees

    # Cropping
    CROP_PADDING: float = 0.2
    THUMBNAIL_SIZE: int = 160

    # Similarity thresholds
    OBSERVATION_DISTANCE_THRESHOLD: float = 0.55
    COSINE_SIMILARITY_THRESHOLD: float = 0.88
    EXPLORATORY_SIMILARITY_THRESHOLD: float = 0.75
    EXPLORATORY_TOP_K: int = 50

    # Search orchestration
    SEARCH_BATCH_SIZE: int = 50
    SEARCH_INITIAL_CEILING: int = 2_000
    CONTINUE_IN_BACKGROUND: bool = True
    MAX_CONCURRENT_EXTRACTIONS: int = 4
    STORED_FACES_SCAN_LIMIT: int = 50_000

    # Optional settings with defaults
    LOG_LEVEL: str = "INFO"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8000

settings = Settings()
