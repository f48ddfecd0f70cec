"""Application configuration and settings."""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Service Configuration
    service_name: str = "intake-orchestrator"
    intake_port: int = 8006
    environment: str = "development"

    # MongoDB Configuration
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_database: str = "patient_intake"
    mongodb_collection_sessions: str = "intake_sessions"

    # GitHub Models API
    github_token: Optional[str] = None
    github_models_endpoint: str = "https://models.inference.ai.azure.com"
    model_name: str = "gpt-4o-mini"
    model_temperature: float = 0.4
    model_max_tokens: int = 1000
    llm_invoke_timeout: float = 25.0

    # JWT Configuration
    jwt_public_key_path: str = "keys/public_key.pem"
    jwt_issuer: str = "intake-auth-service"
    jwt_algorithm: str = "RS256"
    jwt_access_cookie_name: str = "access_token"

    # Intake flow limits
    max_followups_per_stage: int = 2
    offer_conclusion_messages: int = 15
    force_handover_messages: int = 20
    completion_completeness_threshold: int = 60
    handover_completeness_threshold: int = 80
    min_hpi_length: int = 50
    rephrase_after_errors: int = 3
    duplicate_message_window_seconds: float = 5.0

    # Message queue (client-side delivery)
    message_queue_max_retries: int = 3
    message_queue_retry_delay_seconds: float = 1.0
    message_queue_storage_dir: str = ".intake_queue"
    intake_api_base_url: str = "http://localhost:8006"

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False
        protected_namespaces = ("settings_",)


# Global settings instance
settings = Settings()
