import re
from re import Pattern

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore"
    )

    registry_type: str = "scaleway"

    dry_run: bool = False
    concurrency: int = 1

    max_retries: int = 3
    backoff_factor: float = 1.0
    max_backoff: float = 60.0
    request_timeout: float = 30.0

    # Images carrying a tag that fully matches this pattern are never deleted.
    protected_tag_pattern: str = ""

    output_format: str = "text"
    log_level: str = "INFO"

    @field_validator("dry_run", mode="before")
    @classmethod
    def _parse_bool(cls, v: str | bool) -> bool:
        return v if isinstance(v, bool) else v.lower() == "true"

    @field_validator("concurrency")
    @classmethod
    def _check_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("max_retries")
    @classmethod
    def _check_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("output_format")
    @classmethod
    def _check_output_format(cls, v: str) -> str:
        if v.lower() not in ("text", "json"):
            raise ValueError("must be 'text' or 'json'")
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, v: str) -> str:
        if v.upper() not in LOG_LEVELS:
            raise ValueError(f"must be one of {sorted(LOG_LEVELS)}")
        return v.upper()

    @field_validator("protected_tag_pattern")
    @classmethod
    def _check_pattern(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid regular expression: {e}") from None
        return v

    @property
    def compiled_protected_pattern(self) -> Pattern[str] | None:
        return re.compile(self.protected_tag_pattern) if self.protected_tag_pattern else None
