import json
from typing import Annotated, Any, List, Literal, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class RelaySettings(BaseSettings):
    """Relay server configuration, read from RELAY_* environment variables."""
    model_config = SettingsConfigDict(env_prefix="RELAY_")

    host: str = Field(default="0.0.0.0", description="Interface to bind")
    port: int = Field(
        default=5000,
        validation_alias=AliasChoices("RELAY_PORT", "PORT"),
        description="Listening port",
    )
    allowed_origins: Annotated[List[str], NoDecode] = Field(
        default=["http://localhost:3000"],
        description="Browser origins allowed to connect, '*' for any",
    )
    notify_unavailable: bool = Field(
        default=True,
        description="Tell the caller when the dialled identity is not connected",
    )
    end_call_scope: Literal["broadcast", "peer"] = Field(
        default="broadcast",
        description="Who receives callEnded when a participant disconnects",
    )
    outbox_size: int = Field(default=64, ge=1, description="Queued events per connection")
    log_level: str = Field(default="INFO", description="Root log level")

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def split_origins(cls, value: Any) -> Any:
        # Accepts a JSON list or a comma-separated string
        if isinstance(value, str):
            value = value.strip()
            if value.startswith("["):
                return json.loads(value)
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("log_level")
    @classmethod
    def upper_log_level(cls, value: str) -> str:
        return value.upper()

    def origin_allowed(self, origin: Optional[str]) -> bool:
        # Native clients send no Origin header
        if origin is None:
            return True
        return "*" in self.allowed_origins or origin in self.allowed_origins
