"""
Configuration management using Pydantic Settings.

Environment variables:
- LLM_PROVIDER: 'openai' (any OpenAI-compatible server) or 'ollama'
- LLM_API_KEY / LLM_BASE_URL: credentials and endpoint for the OpenAI-compatible server
- MODEL_FAST / MODEL_STANDARD / MODEL_QUALITY: model used per explanation mode
- DATABASE_URL: SQLAlchemy database URL
- DETECTION_*: Region detector thresholds
"""
from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # LLM Configuration
    llm_provider: str = Field(default="openai", env="LLM_PROVIDER")
    llm_api_key: Optional[str] = Field(default=None, env="LLM_API_KEY")
    llm_base_url: Optional[str] = Field(default=None, env="LLM_BASE_URL")
    ollama_base_url: str = Field(default="http://localhost:11434", env="OLLAMA_BASE_URL")
    ollama_timeout: int = Field(default=300, env="OLLAMA_TIMEOUT")

    # Models per explanation mode
    model_fast: str = Field(default="gpt-4o-mini", env="MODEL_FAST")
    model_standard: str = Field(default="gpt-4o", env="MODEL_STANDARD")
    model_quality: str = Field(default="gpt-4o", env="MODEL_QUALITY")
    model_vision: str = Field(default="gpt-4o", env="MODEL_VISION")
    model_qna: str = Field(default="gpt-4o-mini", env="MODEL_QNA")
    llm_temperature: float = Field(default=0.0, env="LLM_TEMPERATURE")
    quality_max_tokens: int = Field(default=16384, env="QUALITY_MAX_TOKENS")
    verify_explanations: bool = Field(default=False, env="VERIFY_EXPLANATIONS")

    # Retry / timeouts
    retry_max_attempts: int = Field(default=3, env="RETRY_MAX_ATTEMPTS")
    retry_initial_delay: float = Field(default=2.0, env="RETRY_INITIAL_DELAY")
    generation_timeout: float = Field(default=180.0, env="GENERATION_TIMEOUT")
    recognition_timeout: float = Field(default=90.0, env="RECOGNITION_TIMEOUT")

    # Region detection
    detection_min_area: int = Field(default=20, env="DETECTION_MIN_AREA")
    detection_max_aspect_ratio: float = Field(default=15.0, env="DETECTION_MAX_ASPECT_RATIO")
    detection_gap_ratio: float = Field(default=0.03, env="DETECTION_GAP_RATIO")
    detection_block_size: int = Field(default=11, env="DETECTION_BLOCK_SIZE")
    detection_c: int = Field(default=2, env="DETECTION_C")

    # Page processing
    ai_image_max_width: int = Field(default=1500, env="AI_IMAGE_MAX_WIDTH")
    pdf_render_dpi: int = Field(default=216, env="PDF_RENDER_DPI")
    max_pages_warning: int = Field(default=5, env="MAX_PAGES_WARNING")

    # Database Configuration
    database_url: str = Field(
        default="sqlite:///haejeok.db",
        env="DATABASE_URL"
    )

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_dir: str = Field(default="logs", env="LOG_DIR")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", env="API_HOST")
    api_port: int = Field(default=8002, env="API_PORT")

    # Session registry
    max_uploads_per_user: int = Field(default=5, env="MAX_UPLOADS_PER_USER")
    max_batches_per_user: int = Field(default=10, env="MAX_BATCHES_PER_USER")
    session_ttl_minutes: int = Field(default=120, env="SESSION_TTL_MINUTES")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    def get_detection_params(self) -> dict:
        """Get region detector thresholds as dictionary."""
        return {
            'min_area': self.detection_min_area,
            'max_aspect_ratio': self.detection_max_aspect_ratio,
            'gap_ratio': self.detection_gap_ratio,
            'block_size': self.detection_block_size,
            'c': self.detection_c,
        }

    def get_model_for_mode(self, mode: str) -> str:
        """Get the model name used for an explanation mode."""
        models = {
            'fast': self.model_fast,
            'standard': self.model_standard,
            'quality': self.model_quality,
        }
        if mode not in models:
            raise ValueError(f"Unknown explanation mode: '{mode}'")
        return models[mode]


# Global settings instance
settings = Settings()
