from __future__ import annotations

import os
from typing import Any, Callable, Dict, Tuple

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class RedisConfig(BaseModel):
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: str = ""
    # Allow setting a full URL directly (takes precedence over individual fields)
    full_url: str = ""

    @property
    def url(self) -> str:
        if self.full_url:
            return self.full_url
        if self.password:
            return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class QueueConfig(BaseModel):
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0  # doubled per attempt
    concurrency: int = 2               # workers per stage
    poll_interval_seconds: float = 2.0
    lease_seconds: float = 900.0       # active jobs without progress for this long are stalled
    keep_completed: int = 100
    keep_failed: int = 50


class ShowrunnerConfig(BaseModel):
    backend: str = "ollama"  # ollama | gemini
    max_generation_attempts: int = 3
    generation_retry_delay_seconds: float = 2.0
    temperature: float = 0.3
    top_p: float = 0.9


class OllamaConfig(BaseModel):
    base_url: str = "http://localhost:11434"
    model: str = "llama3.2:3b"
    timeout_seconds: float = 300.0
    pull_timeout_seconds: float = 600.0
    max_tokens: int = 4096


class GeminiConfig(BaseModel):
    api_key: str = ""
    model: str = "gemini-2.0-flash"
    timeout_seconds: float = 300.0


class ElevenLabsConfig(BaseModel):
    api_key: str = ""
    base_url: str = "https://api.elevenlabs.io/v1"
    voice_id: str = "21m00Tcm4TlvDq8ikWAM"  # Default Rachel voice
    model_id: str = "eleven_multilingual_v2"
    timeout_seconds: float = 60.0


class WhisperConfig(BaseModel):
    binary: str = "whisper"
    model: str = "base"
    language: str = "pt"
    timeout_seconds: float = 3600.0
    # Gap (seconds) after which the placeholder labeller rotates to the next speaker
    speaker_gap_seconds: float = 2.0
    speaker_labels: Tuple[str, ...] = ("person_1", "person_2", "person_3")


class SceneDetectionConfig(BaseModel):
    threshold: float = 0.3          # ffmpeg scene score (0-1)
    min_scene_duration: float = 1.0
    timeout_seconds: float = 1800.0


class StorageConfig(BaseModel):
    storage_path: str = "./storage"


class FFmpegConfig(BaseModel):
    threads: int = 0  # 0 = let ffmpeg decide
    video_codec: str = "libx264"
    audio_codec: str = "aac"
    video_bitrate: str = "5000k"
    audio_bitrate: str = "192k"
    resolution: str = "1920x1080"
    short_resolution: str = "1080x1920"
    fps: int = 30
    narration_volume: float = 1.0
    source_volume: float = 0.3


class AppConfig(BaseModel):
    app_name: str = "Reality Maker"
    log_level: str = "info"
    log_file: str = ""


# Legacy flat env var -> (nested path, converter)
_LEGACY_ENV: Dict[str, Tuple[Tuple[str, ...], Callable[[str], Any]]] = {
    "REDIS_URL": (("redis", "full_url"), str),
    "REDIS_HOST": (("redis", "host"), str),
    "REDIS_PORT": (("redis", "port"), int),
    "REDIS_DB": (("redis", "db"), int),
    "REDIS_PASSWORD": (("redis", "password"), str),
    "WORKER_CONCURRENCY": (("queue", "concurrency"), int),
    "JOB_ATTEMPTS": (("queue", "max_attempts"), int),
    "SHOWRUNNER_BACKEND": (("showrunner", "backend"), str),
    "OLLAMA_URL": (("ollama", "base_url"), str),
    "OLLAMA_MODEL": (("ollama", "model"), str),
    "GEMINI_API_KEY": (("gemini", "api_key"), str),
    "GEMINI_MODEL": (("gemini", "model"), str),
    "ELEVENLABS_API_KEY": (("elevenlabs", "api_key"), str),
    "ELEVENLABS_VOICE_ID": (("elevenlabs", "voice_id"), str),
    "ELEVENLABS_MODEL_ID": (("elevenlabs", "model_id"), str),
    "WHISPER_MODEL": (("whisper", "model"), str),
    "WHISPER_LANGUAGE": (("whisper", "language"), str),
    "STORAGE_PATH": (("storage", "storage_path"), str),
    "FFMPEG_THREADS": (("ffmpeg", "threads"), int),
    "LOG_LEVEL": (("app", "log_level"), str),
    "LOG_FILE": (("app", "log_file"), str),
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
        env_nested_delimiter="__",
    )

    redis: RedisConfig = Field(default_factory=RedisConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    showrunner: ShowrunnerConfig = Field(default_factory=ShowrunnerConfig)
    ollama: OllamaConfig = Field(default_factory=OllamaConfig)
    gemini: GeminiConfig = Field(default_factory=GeminiConfig)
    elevenlabs: ElevenLabsConfig = Field(default_factory=ElevenLabsConfig)
    whisper: WhisperConfig = Field(default_factory=WhisperConfig)
    scene_detection: SceneDetectionConfig = Field(default_factory=SceneDetectionConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    ffmpeg: FFmpegConfig = Field(default_factory=FFmpegConfig)
    app: AppConfig = Field(default_factory=AppConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[Any, ...]:
        """
        Support BOTH:
        - nested env vars (e.g., QUEUE__CONCURRENCY) via env_nested_delimiter
        - the flat env vars the Node services used (e.g., REDIS_URL, OLLAMA_MODEL)

        Priority: init > env > dotenv > legacy > secrets
        """

        def legacy_flat_env_source() -> Dict[str, Any]:
            env: Dict[str, str] = {}
            try:
                from dotenv import dotenv_values  # local import to avoid hard dependency at import-time

                env_file = cls.model_config.get("env_file", ".env")
                if env_file:
                    env.update({k: (v or "") for k, v in dotenv_values(env_file).items() if k})
            except Exception:
                # If dotenv parsing fails, fall back to environment only.
                pass

            env.update(os.environ)

            out: Dict[str, Any] = {}
            for var, (path, convert) in _LEGACY_ENV.items():
                raw = env.get(var)
                if raw is None:
                    continue
                try:
                    value = convert(raw.strip())
                except ValueError:
                    continue
                node = out
                for key in path[:-1]:
                    node = node.setdefault(key, {})
                node[path[-1]] = value
            return out

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            legacy_flat_env_source,
            file_secret_settings,
        )

    @property
    def redis_url(self) -> str:
        return self.redis.url

    @property
    def storage_dir(self) -> str:
        return self.storage.storage_path

    @property
    def temp_dir(self) -> str:
        return os.path.join(self.storage.storage_path, "temp")

    def project_dir(self, project_id: str) -> str:
        return os.path.join(self.storage.storage_path, "projects", project_id)

    @property
    def exports_dir(self) -> str:
        return os.path.join(self.storage.storage_path, "exports")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
