from pydantic import Field, IPvAnyAddress, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Fanout Relay Configuration.
    Reads from environment variables and optional .env file.
    Built once in main() and handed to every component that needs it.
    """

    # Remote configuration store
    JSON_DB: str = Field(
        default="http://localhost:3000", description="Base URL of the JSON configuration store"
    )
    SOURCE_KINDS: str = Field(
        default="video,sound,trlout",
        description="Comma separated source collections to relay, in start order",
    )
    FETCH_TIMEOUT: float = Field(default=10.0, gt=0, description="HTTP timeout in seconds")

    # Relay Configuration
    LISTEN_IP: IPvAnyAddress = Field(
        default="0.0.0.0", validate_default=True, description="IP to listen on"
    )
    BODY_SIZE: int = Field(default=4096, ge=1, le=65535, description="Size of body to read")
    START_DELAY: float = Field(default=0.1, ge=0, description="Seconds between relay starts")
    STRICT_STARTUP: bool = Field(
        default=True, description="Stop the whole process when any relay fails to start"
    )

    # Logging
    DEBUG: bool = Field(default=False, description="Enable debug logging")
    PRETTY: bool = Field(default=True, description="Human readable console logs instead of JSON")
    LOG_DIR: str | None = Field(default=None, description="Directory for rotating log files")

    # Health endpoint
    HEALTH_ENABLED: bool = Field(default=True, description="Serve the HTTP health endpoint")
    HEALTH_HOST: str = Field(default="0.0.0.0", description="Health endpoint bind host")
    HEALTH_PORT: int = Field(default=8080, ge=1, le=65535, description="Health endpoint port")

    # Status heartbeat
    STATUS_FILE: str | None = Field(default=None, description="Path to status file")
    STATUS_INTERVAL: float = Field(default=5.0, gt=0, description="Heartbeat period in seconds")

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"
    )

    @field_validator("JSON_DB", mode="after")
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("SOURCE_KINDS", mode="after")
    def normalize_kinds(cls, v: str) -> str:
        kinds = [part.strip().lower() for part in v.split(",") if part.strip()]
        if not kinds:
            raise ValueError("SOURCE_KINDS must name at least one collection")
        return ",".join(dict.fromkeys(kinds))

    @property
    def source_kinds(self) -> list[str]:
        return self.SOURCE_KINDS.split(",")

    @property
    def listen_ip(self) -> str:
        return str(self.LISTEN_IP)
