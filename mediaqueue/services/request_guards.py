"""Acceptance pipeline for chat requests.

Each guard inspects a GuardContext inside the ingestion transaction and
returns either None (accept, continue) or a GuardRejection carrying the
warning code and the notice to show. Guards run in ACCEPTANCE_GUARDS order
and the first rejection wins:

    url → site → duplicate → cooldown → ng-user → concurrent-limit
"""

import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from mediaqueue.models import ParsedUrl, RequestStatus, ensure_utc
from mediaqueue.schemas.policy import PolicyRules
from mediaqueue.services import request_service
from mediaqueue.services.url_parser import extract_request_url

log = structlog.get_logger()


@dataclass
class GuardContext:
    """Inputs shared by all guards; url_guard fills in parsed."""

    message: str
    platform: str
    user_id: str | None
    user_name: str | None
    rules: PolicyRules
    now: datetime
    warn_on_missing_url: bool = False
    parsed: ParsedUrl | None = None

    @property
    def owner_id(self) -> str | None:
        return self.user_id or self.user_name


@dataclass(frozen=True)
class GuardRejection:
    reason: str
    message_key: str
    params: dict[str, Any] = field(default_factory=dict)
    notify: bool = True


Guard = Callable[[AsyncSession, GuardContext], Awaitable[GuardRejection | None]]


async def url_guard(session: AsyncSession, ctx: GuardContext) -> GuardRejection | None:
    parsed = extract_request_url(ctx.message, ctx.rules.custom_sites)
    if parsed is None:
        return GuardRejection(
            reason="url-not-found",
            message_key="reason_invalid_url",
            params={"url": ctx.message},
            notify=ctx.warn_on_missing_url,
        )
    ctx.parsed = parsed
    return None


async def site_guard(session: AsyncSession, ctx: GuardContext) -> GuardRejection | None:
    if ctx.rules.site_allowed(ctx.parsed.site):
        return None
    return GuardRejection(
        reason="site-disabled",
        message_key="reason_site_disabled",
        params={"siteKey": ctx.parsed.site},
    )


async def duplicate_guard(session: AsyncSession, ctx: GuardContext) -> GuardRejection | None:
    if not ctx.rules.disallow_duplicates:
        return None
    existing = await request_service.find_active_by_video(
        session, ctx.parsed.site, ctx.parsed.video_id
    )
    if existing is None:
        return None
    return GuardRejection(
        reason="duplicate-in-queue",
        message_key="reason_duplicate_in_queue",
        params={"url": ctx.parsed.raw_url},
    )


def last_played_at(request: Any, now: datetime) -> datetime | None:
    """play_ended_at, else now while still PLAYING, else play_started_at."""
    if request is None:
        return None
    if request.play_ended_at is not None:
        return ensure_utc(request.play_ended_at)
    if request.status == RequestStatus.PLAYING:
        return now
    return ensure_utc(request.play_started_at)


async def cooldown_guard(session: AsyncSession, ctx: GuardContext) -> GuardRejection | None:
    latest = await request_service.find_latest_by_video(
        session, ctx.parsed.site, ctx.parsed.video_id
    )
    played_at = last_played_at(latest, ctx.now)
    if played_at is None:
        return None

    cooldown_sec = ctx.rules.cooldown_minutes * 60
    elapsed_sec = (ctx.now - played_at).total_seconds()
    # Zero cooldown: any prior play blocks for good
    if cooldown_sec and elapsed_sec >= cooldown_sec:
        return None

    minutes = 0 if not cooldown_sec else max(1, math.ceil((cooldown_sec - elapsed_sec) / 60))
    return GuardRejection(
        reason="cooldown",
        message_key="reason_cooldown_wait",
        params={"minutes": minutes, "url": ctx.parsed.raw_url},
    )


async def ng_user_guard(session: AsyncSession, ctx: GuardContext) -> GuardRejection | None:
    owner_id = ctx.owner_id
    if not ctx.rules.ng_user_blocking_enabled or not owner_id:
        return None
    if owner_id not in ctx.rules.ng_user_ids:
        return None
    return GuardRejection(
        reason="ng-user",
        message_key="reason_ng_user",
        params={"user": owner_id},
    )


async def concurrent_limit_guard(
    session: AsyncSession, ctx: GuardContext
) -> GuardRejection | None:
    owner_id = ctx.owner_id
    if not ctx.rules.concurrent_limit_enabled or not owner_id:
        return None
    limit = ctx.rules.concurrent_limit_count
    active = await request_service.count_active_by_owner(session, owner_id)
    if active < limit:
        return None
    return GuardRejection(
        reason="concurrent-limit",
        message_key="reason_concurrent_limit",
        params={"limit": limit, "user": ctx.user_name or owner_id},
    )


ACCEPTANCE_GUARDS: list[tuple[str, Guard]] = [
    ("url", url_guard),
    ("site", site_guard),
    ("duplicate", duplicate_guard),
    ("cooldown", cooldown_guard),
    ("ng_user", ng_user_guard),
    ("concurrent_limit", concurrent_limit_guard),
]


async def run_guards(
    session: AsyncSession,
    ctx: GuardContext,
    guards: list[tuple[str, Guard]] | None = None,
) -> GuardRejection | None:
    """Run guards in order; return the first rejection or None when accepted."""
    for name, guard in guards or ACCEPTANCE_GUARDS:
        rejection = await guard(session, ctx)
        if rejection is not None:
            log.info(
                "request_guard_rejected",
                guard=name,
                reason=rejection.reason,
                platform=ctx.platform,
                owner_id=ctx.owner_id,
            )
            return rejection
    return None
