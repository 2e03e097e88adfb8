"""Operator rule schema for the YAML policy file.

This module defines the Pydantic v2 schema for the rules the acceptance
pipeline, the download worker and the continuation poll read as policy.

Example YAML:
    max_duration_enabled: true
    max_duration_minutes: 8
    disallow_duplicates: true
    cooldown_minutes: 60
    allow_bilibili: false
    custom_sites:
      - id: soundcloud
        pattern: "/(https?:\\/\\/soundcloud\\.com\\/\\S+)/i"
        alias: sc
    concurrent_limit_enabled: true
    concurrent_limit_count: 3
    ng_user_blocking_enabled: true
    ng_user_ids: ["UCspam"]
    poll_enabled: true
    poll_interval_sec: 90
"""

import math
import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

ALIAS_PATTERN = re.compile(r"^[a-z0-9_-]{1,8}$")


class CustomSiteRule(BaseModel):
    """Operator-defined site matcher.

    Attributes:
        id: Stable rule identifier.
        pattern: "/body/flags" literal or a plain regex (compiled
            case-insensitively).
        alias: Optional 1-8 char short form; "alias/ID" in chat resolves to
            https://<host from pattern>/ID.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(..., min_length=1, max_length=100)
    pattern: str = Field(..., min_length=1)
    alias: str | None = None

    @field_validator("alias", mode="before")
    @classmethod
    def normalize_alias(cls, v: str | None) -> str | None:
        if v is None:
            return None
        alias = str(v).strip().lower()
        if not alias:
            return None
        if not ALIAS_PATTERN.match(alias):
            raise ValueError(f"alias must be 1-8 chars of [a-z0-9_-], got: {v!r}")
        return alias


class PolicyRules(BaseModel):
    """Read contract of the policy store.

    Lower bounds are clamped rather than rejected so a hand-edited file with
    e.g. poll_window_sec: 1 still loads.
    """

    model_config = ConfigDict(validate_assignment=True)

    max_duration_minutes: int = 10
    max_duration_enabled: bool = False

    disallow_duplicates: bool = True
    cooldown_minutes: int = 60

    poll_enabled: bool = False
    poll_interval_sec: int = 90
    poll_window_sec: int = 20
    poll_stop_delay_sec: int = 10

    allow_youtube: bool = True
    allow_nicovideo: bool = True
    allow_bilibili: bool = True
    custom_sites: list[CustomSiteRule] = Field(default_factory=list)

    concurrent_limit_enabled: bool = False
    concurrent_limit_count: int = 5

    ng_user_blocking_enabled: bool = False
    ng_user_ids: list[str] = Field(default_factory=list)

    @field_validator("max_duration_minutes", "concurrent_limit_count")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        return max(1, v)

    @field_validator("cooldown_minutes")
    @classmethod
    def non_negative(cls, v: int) -> int:
        return max(0, v)

    @field_validator("poll_interval_sec")
    @classmethod
    def clamp_interval(cls, v: int) -> int:
        return max(10, v)

    @field_validator("poll_window_sec")
    @classmethod
    def clamp_window(cls, v: int) -> int:
        return max(5, v)

    @field_validator("poll_stop_delay_sec")
    @classmethod
    def clamp_stop_delay(cls, v: int) -> int:
        return max(1, v)

    @field_validator("ng_user_ids", mode="before")
    @classmethod
    def normalize_ng_users(cls, v: list[str] | None) -> list[str]:
        """Trim, drop blanks and de-duplicate while keeping first-seen order."""
        seen: list[str] = []
        for raw in v or []:
            user = str(raw).strip()
            if user and user not in seen:
                seen.append(user)
        return seen

    @property
    def effective_max_duration_sec(self) -> float:
        """Duration limit in seconds, infinite when limiting is disabled."""
        if not self.max_duration_enabled:
            return math.inf
        return float(self.max_duration_minutes * 60)

    def site_allowed(self, site: str) -> bool:
        """Custom ("other") sites are always allowed once a rule matched."""
        if site == "youtube":
            return self.allow_youtube
        if site == "nicovideo":
            return self.allow_nicovideo
        if site == "bilibili":
            return self.allow_bilibili
        return True
