from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    # Persistence: "memory" keeps records in-process, "firestore" uses Cloud Firestore
    store_backend: str = "memory"
    google_cloud_project: str = ""
    firestore_emulator_host: Optional[str] = None
    firestore_collection: str = "games"
    record_ttl_hours: float = 4

    # Session lifetime
    session_max_age_sec: int = 3600
    sweep_interval_sec: int = 3600
    host_abandon_delay_sec: float = 300
    # Rebinding the host of an existing game requires its stored hostId
    require_host_id: bool = True

    # CORS origins: set ALLOWED_ORIGINS env var for production (JSON list)
    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]
    # Extra production origin; appended to allowed_origins
    extra_origin: str = ""
    log_level: str = "INFO"
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )

    @property
    def cors_origins(self) -> List[str]:
        if self.extra_origin:
            return [*self.allowed_origins, self.extra_origin]
        return list(self.allowed_origins)


settings = Settings()
