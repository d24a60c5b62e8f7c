from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PositiveInt = Annotated[int, Field(ge=1)]
NonNegativeInt = Annotated[int, Field(ge=0)]
PositiveFloat = Annotated[float, Field(gt=0.0)]
NonNegativeFloat = Annotated[float, Field(ge=0.0)]

_DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)


def _non_empty_name(value: str) -> str:
    name = (value or "").strip()
    if not name:
        raise ValueError("must be non-empty")
    if "/" in name or "\\" in name or name in (".", ".."):
        raise ValueError("must be a plain file or directory name")
    return name


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    data_root: str = "~/.likes-archive"
    database_name: str = "archive.sqlite"
    media_dir_name: str = "media"
    recreate_if_corrupt: bool = True

    @field_validator("database_name", "media_dir_name")
    @classmethod
    def _names_must_be_plain(cls, v: str) -> str:
        return _non_empty_name(v)


class BrowserConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    profile_dir_name: str = "browser-profile"
    channel: str = "chrome"
    headless: bool = False
    viewport_width: PositiveInt = 1280
    viewport_height: PositiveInt = 800
    base_url: str = "https://x.com"
    likes_path: str = ""
    navigation_timeout_ms: PositiveInt = 30000
    selector_timeout_ms: PositiveInt = 30000
    login_timeout_ms: PositiveInt = 300000
    login_poll_ms: PositiveInt = 5000

    @field_validator("profile_dir_name")
    @classmethod
    def _profile_must_be_plain(cls, v: str) -> str:
        return _non_empty_name(v)

    @field_validator("base_url")
    @classmethod
    def _base_url_must_be_http(cls, v: str) -> str:
        url = (v or "").strip().rstrip("/")
        if not url.startswith(("http://", "https://")):
            raise ValueError("must be an http(s) URL")
        return url

    @model_validator(mode="after")
    def _login_wait_covers_poll(self) -> "BrowserConfig":
        if self.login_timeout_ms < self.login_poll_ms:
            raise ValueError("login_timeout_ms must be >= login_poll_ms")
        return self


class PaginationConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    incremental_max_scrolls: PositiveInt = 5
    backfill_max_scrolls: PositiveInt = 200
    stall_limit: PositiveInt = 3
    settle_ms: NonNegativeInt = 2000
    scroll_step_px: NonNegativeInt = 0  # 0 scrolls one window height
    conversation_max_scrolls: NonNegativeInt = 10

    @model_validator(mode="after")
    def _backfill_must_cover_incremental(self) -> "PaginationConfig":
        if self.backfill_max_scrolls < self.incremental_max_scrolls:
            raise ValueError("backfill_max_scrolls must be >= incremental_max_scrolls")
        return self


class MediaConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    concurrency: PositiveInt = 5
    timeout_seconds: PositiveFloat = 30.0
    http_retries: NonNegativeInt = 2
    user_agent: str = _DEFAULT_USER_AGENT


class LinksConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    resolve_redirects: bool = True
    timeout_seconds: PositiveFloat = 10.0


class RetrySettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    max_attempts: PositiveInt = 3
    base_delay_seconds: NonNegativeFloat = 1.0
    max_delay_seconds: NonNegativeFloat = 10.0
    jitter_ratio: float = Field(0.25, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _max_delay_covers_base(self) -> "RetrySettings":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    storage: StorageConfig = Field(default_factory=StorageConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    pagination: PaginationConfig = Field(default_factory=PaginationConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    links: LinksConfig = Field(default_factory=LinksConfig)
    retry: RetrySettings = Field(default_factory=RetrySettings)
