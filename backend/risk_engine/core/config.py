from typing import List

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    # App Config
    APP_NAME: str = "Activity Risk Engine"
    APP_ENV: str = "development"
    PORT: int = 8000
    DEBUG: bool = True
    LOG_LEVEL: str = Field(default="INFO")

    # Database
    DATABASE_URL: str = "sqlite:///./risk_engine.db"
    ALERT_STORE_CAPACITY: int = Field(default=5000)
    ACTIVITY_STORE_CAPACITY: int = Field(default=100000)

    # Feature normalization
    RISK_CAP: float = Field(default=3000.0)
    BREACH_CAP: float = Field(default=10.0)
    TRANSFER_VOLUME_FLOOR: float = Field(default=10000.0)

    # Anomaly scoring
    Z_THRESHOLD: float = Field(default=2.0)
    Z_EPSILON: float = Field(default=0.1)
    MODEL_MIN_SAMPLES: int = Field(default=10)
    MODEL_MAX_TRAINING_SAMPLES: int = Field(default=2000)
    MODEL_EPOCHS: int = Field(default=50)
    MODEL_LEARNING_RATE: float = Field(default=0.01)
    MODEL_SEED: int = Field(default=42)
    HEATMAP_MODEL_MIN_ACTIVITIES: int = Field(default=20)
    HEATMAP_MODEL_EPOCHS: int = Field(default=100)

    # Derived analytics
    SEQUENCE_LENGTH: int = Field(default=3)
    MAX_SEQUENCE_PATTERNS: int = Field(default=10)
    SEQUENCE_MAX_ACTIVITIES: int = Field(default=10000)
    CLUSTERING_MAX_ACTIVITIES: int = Field(default=10000)
    CLUSTERING_MAX_USERS: int = Field(default=50)

    # Recommendations
    CONFIDENCE_THRESHOLD: float = Field(default=0.65)
    MAX_RECOMMENDATIONS: int = Field(default=10)
    CRITICAL_HOURS: List[int] = Field(default_factory=lambda: [1, 2, 3])
    TEMPORAL_BURST_MULTIPLIER: float = Field(default=5.0)

    # Chunked execution
    CHUNK_SIZE: int = Field(default=200)
    PROGRESS_REPORT_INTERVAL_MS: int = Field(default=500)
    LARGE_DATASET_THRESHOLD: int = Field(default=5000)
    SAMPLE_SIZE: int = Field(default=2000)
    MIN_ACTIVITIES_FOR_ANALYSIS: int = Field(default=10)

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
