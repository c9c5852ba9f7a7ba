import os
from pathlib import Path
from typing import Optional
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import toml


CONFIG_ENV_VAR = "MAILCOMPOSER_CONFIG_PATH"
DEFAULT_CONFIG_PATH = "config.toml"


class MailSettings(BaseSettings):
    """Outbound relay and the single sender identity."""
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    use_tls: bool = True
    timeout: float = Field(30.0, description="Socket timeout in seconds")
    # EMAIL_USER / EMAIL_PASSWORD in the environment
    email_user: Optional[str] = Field(None, description="Sender address, also the SMTP login")
    email_password: Optional[str] = Field(None, description="SMTP password or app password")
    sender_name: Optional[str] = Field(None, description="Display name used in From and {{sender_name}}")
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def has_credentials(self) -> bool:
        return bool(self.email_user) and bool(self.email_password)


class Settings(BaseSettings):
    """Main application settings, from the environment and an optional TOML file."""
    mail: MailSettings = Field(default_factory=MailSettings)
    timezone: str = Field("UTC", description="IANA zone for naive scheduledTime values")
    log_level: str = "INFO"
    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://localhost:5174", "http://localhost:5175"]
    )
    max_attachment_mb: int = 25
    verify_on_startup: bool = True
    # Prefixed so that e.g. $MAIL (the mbox path on most systems) is never read as the mail table
    model_config = SettingsConfigDict(
        env_prefix="MAILCOMPOSER_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone: {value!r}") from exc
        return value

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @classmethod
    def from_toml(cls, toml_path: str | Path = DEFAULT_CONFIG_PATH) -> "Settings":
        """Load settings from a TOML file; the environment fills whatever it leaves out."""
        toml_path = Path(toml_path)

        if not toml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {toml_path}")

        with open(toml_path, "r", encoding="utf-8") as f:
            config_data = toml.load(f)

        # Build the nested model explicitly so EMAIL_USER / EMAIL_PASSWORD still apply
        mail_cfg = config_data.pop("mail", None) or {}
        return cls(mail=MailSettings(**mail_cfg), **config_data)


def get_settings() -> Settings:
    """Settings from config.toml when present, otherwise from the environment alone."""
    path = Path(os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH))
    if path.exists():
        return Settings.from_toml(path)
    return Settings()


def utc_now() -> datetime:
    """Return current timezone-aware datetime in UTC."""
    return datetime.now(timezone.utc)
