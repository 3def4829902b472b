"""
Central configuration for the Flow Dictation service
"""

from typing import List, Optional
from pydantic_settings import BaseSettings
from pydantic import Field
from enum import Enum


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class ReportTemplateName(str, Enum):
    RADIOLOGY = "radiology"
    CARDIOLOGY = "cardiology"
    PATHOLOGY = "pathology"


class BatchSTTProvider(str, Enum):
    OPENAI = "openai"
    ASSEMBLYAI = "assemblyai"


class ChunkingMode(str, Enum):
    # Re-segment client audio into fixed frames
    REBUFFER = "rebuffer"
    # Forward browser chunks as received
    PASSTHROUGH = "passthrough"


class Settings(BaseSettings):
    # Environment
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # API Configuration
    api_title: str = Field(default="Flow Dictation API")
    api_description: str = Field(default="Real-time medical dictation relay and report generation")
    api_version: str = Field(default="1.0.0")
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8080)
    api_secret_key: str = Field(...)
    frontend_url: str = Field(default="http://localhost:8080")

    # External Service APIs
    openai_api_key: str = Field(...)
    assemblyai_api_key: str = Field(...)
    assemblyai_api_base_url: str = Field(default="https://api.assemblyai.com")
    assemblyai_streaming_host: str = Field(default="streaming.assemblyai.com")

    # Rate Limiting
    rate_limit_requests: int = Field(default=10)
    rate_limit_window: int = Field(default=60)  # seconds

    # Streaming audio relay
    audio_sample_rate: int = Field(default=16000)
    audio_frames_per_second: int = Field(default=20)  # 50 ms frames
    audio_chunking_mode: ChunkingMode = Field(default=ChunkingMode.REBUFFER)
    audio_flush_trailing: bool = Field(default=False)
    stt_handshake_timeout: float = Field(default=10.0)  # seconds
    stt_format_turns: bool = Field(default=True)

    # Upload transcription
    upload_dir: str = Field(default="uploads")
    max_file_size_mb: int = Field(default=25)
    supported_audio_formats: List[str] = Field(
        default=[
            "audio/mpeg", "audio/wav", "audio/x-wav", "audio/mp4", "audio/m4a",
            "audio/ogg", "audio/webm", "video/webm",
        ]
    )
    batch_stt_provider: BatchSTTProvider = Field(default=BatchSTTProvider.OPENAI)
    batch_stt_model: str = Field(default="whisper-1")  # OpenAI provider
    assemblyai_speech_model: str = Field(default="best")  # AssemblyAI provider

    # Timeouts
    stt_timeout: int = Field(default=60)
    llm_timeout: int = Field(default=30)

    # LLM Configuration
    llm_temperature: float = Field(default=0.3)
    llm_max_tokens: int = Field(default=1000)
    default_llm_model: str = Field(default="gpt-4o")
    default_report_template: ReportTemplateName = Field(default=ReportTemplateName.RADIOLOGY)

    # Static client
    static_dir: str = Field(default="public")

    # CORS Configuration
    cors_origins: List[str] = Field(default=["*"])
    cors_allow_credentials: bool = Field(default=False)
    cors_allow_methods: List[str] = Field(default=["GET", "POST"])
    cors_allow_headers: List[str] = Field(default=["*"])

    # Security
    token_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=30)
    oauth_state_expire_minutes: int = Field(default=10)
    data_encryption_key: str = Field(...)

    # Outbound email (Gmail OAuth)
    google_client_id: Optional[str] = Field(default=None)
    google_client_secret: Optional[str] = Field(default=None)
    google_redirect_uri: str = Field(default="http://localhost:8080/api/email/callback")
    google_oauth_scopes: List[str] = Field(
        default=[
            "https://www.googleapis.com/auth/gmail.send",
            "https://www.googleapis.com/auth/userinfo.email",
        ]
    )
    email_timeout: int = Field(default=15)

    # Monitoring
    enable_metrics: bool = Field(default=True)

    # Audit Logging
    audit_log_enabled: bool = Field(default=True)

    @property
    def audio_frame_samples(self) -> int:
        """Samples per upstream frame, e.g. 16000 / 20 = 800."""
        return self.audio_sample_rate // self.audio_frames_per_second

    @property
    def email_configured(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
