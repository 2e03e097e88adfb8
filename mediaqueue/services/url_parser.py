"""Extract a canonical video identity from free-form chat text.

Built-in parsers recognise YouTube, Niconico and Bilibili, first from full
http(s) URLs and then from bare ids in plain text. Operator-defined custom
site rules are consulted only when no built-in parser matched.

All id regexes use re.ASCII so word boundaries behave the same next to
Japanese text as they do next to spaces.
"""

import re
from collections.abc import Iterable
from urllib.parse import parse_qs, parse_qsl, urlencode, urlsplit, urlunsplit

import structlog

from mediaqueue.models import ParsedUrl
from mediaqueue.schemas.policy import CustomSiteRule

log = structlog.get_logger()

URL_REGEX = re.compile(r"https?://\S+", re.IGNORECASE)

YOUTUBE_ID_REGEXES = [
    re.compile(r"watch\?v=([A-Za-z0-9_-]{11})", re.IGNORECASE),
    re.compile(r"youtu\.be/([A-Za-z0-9_-]{11})", re.IGNORECASE),
    re.compile(r"shorts/([A-Za-z0-9_-]+)", re.IGNORECASE),
    re.compile(r"live/([A-Za-z0-9_-]+)", re.IGNORECASE),
]
NICOVIDEO_ID_REGEX = re.compile(r"\b((?:sm|nm|so)\d+)\b", re.IGNORECASE | re.ASCII)
NICOVIDEO_PATH_ID_REGEX = re.compile(r"^(?:sm|nm|so)\d+$", re.IGNORECASE)
BILIBILI_BVID_INLINE_REGEX = re.compile(r"\b(BV[0-9A-Za-z]{10})\b", re.IGNORECASE | re.ASCII)
BILIBILI_AVID_INLINE_REGEX = re.compile(r"\b(av\d+)\b", re.IGNORECASE | re.ASCII)
BILIBILI_BVID_QUERY_REGEX = re.compile(r"bvid=(BV[0-9A-Za-z]{10})", re.IGNORECASE)
BILIBILI_BVID_EXACT_REGEX = re.compile(r"^BV[0-9A-Za-z]{10}$", re.IGNORECASE)
BILIBILI_AVID_EXACT_REGEX = re.compile(r"^av\d+$", re.IGNORECASE)

TRAILING_DELIMITERS = re.compile(r"[)\],.;!?]+$")
HOST_TOKEN_REGEX = re.compile(r"(?:www\.)?((?:[a-z0-9-]+\.)+[a-z]{2,})", re.IGNORECASE)

_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}


def _matches_domain(hostname: str, domain: str) -> bool:
    return hostname == domain or hostname.endswith(f".{domain}")


def _is_youtube_host(hostname: str) -> bool:
    return _matches_domain(hostname, "youtube.com")


def _is_nicovideo_host(hostname: str) -> bool:
    return _matches_domain(hostname, "nicovideo.jp") or _matches_domain(hostname, "niconico.com")


def _is_bilibili_host(hostname: str) -> bool:
    return _matches_domain(hostname, "bilibili.com") or _matches_domain(hostname, "bilibili.tv")


def _youtube(video_id: str, raw_url: str | None = None) -> ParsedUrl:
    normalized = f"https://www.youtube.com/watch?v={video_id}"
    return ParsedUrl(
        site="youtube",
        video_id=video_id,
        normalized_url=normalized,
        raw_url=raw_url or normalized,
    )


def normalize_bilibili_video_id(value: str | None) -> str | None:
    """Normalize a BV/av id, forcing the "BV" prefix to upper case."""
    if not value:
        return None
    trimmed = value.strip()
    if BILIBILI_BVID_EXACT_REGEX.match(trimmed):
        return f"BV{trimmed[2:]}"
    if BILIBILI_AVID_EXACT_REGEX.match(trimmed):
        return f"av{trimmed[2:]}"
    return None


def _bilibili(video_id: str | None, raw_url: str | None = None) -> ParsedUrl | None:
    normalized_id = normalize_bilibili_video_id(video_id)
    if not normalized_id:
        return None
    normalized = f"https://www.bilibili.com/video/{normalized_id}"
    return ParsedUrl(
        site="bilibili",
        video_id=normalized_id,
        normalized_url=normalized,
        raw_url=raw_url or normalized,
    )


def _find_bilibili_video_id(text: str | None) -> str | None:
    if not text:
        return None
    for regex in (BILIBILI_BVID_INLINE_REGEX, BILIBILI_BVID_QUERY_REGEX, BILIBILI_AVID_INLINE_REGEX):
        found = regex.search(text)
        if found:
            return found.group(1)
    return None


def _avid_candidate(value: str | None) -> str | None:
    if not value or not value.strip():
        return None
    trimmed = value.strip()
    return trimmed if trimmed.lower().startswith("av") else f"av{trimmed}"


def _first_query_value(query: dict[str, list[str]], key: str) -> str | None:
    values = query.get(key)
    return values[0] if values else None


def parse_full_url(raw_url: str) -> ParsedUrl | None:
    """Parse a single http(s) URL on one of the recognised hosts."""
    try:
        parts = urlsplit(raw_url)
    except ValueError:
        return None
    if parts.scheme.lower() not in ("http", "https"):
        return None
    hostname = (parts.hostname or "").lower()
    segments = [segment for segment in parts.path.split("/") if segment]
    query = parse_qs(parts.query)

    if _is_youtube_host(hostname):
        video_id = _first_query_value(query, "v")
        if not video_id and len(segments) >= 2 and segments[0] in ("shorts", "live"):
            video_id = segments[1]
        return _youtube(video_id, raw_url) if video_id else None

    if hostname == "youtu.be":
        return _youtube(segments[0], raw_url) if segments else None

    if _is_bilibili_host(hostname):
        candidates = [
            _find_bilibili_video_id(parts.path),
            _first_query_value(query, "bvid"),
            _first_query_value(query, "bvids"),
            _avid_candidate(_first_query_value(query, "avid")),
            _avid_candidate(_first_query_value(query, "aid")),
        ]
        for candidate in candidates:
            parsed = _bilibili(candidate, raw_url)
            if parsed:
                return parsed
        return None

    if _is_nicovideo_host(hostname) or hostname == "nico.ms":
        if not segments:
            return None
        video_id = segments[-1]
        # Live ids (lv...) and channel pages are not downloadable videos
        if not NICOVIDEO_PATH_ID_REGEX.match(video_id):
            return None
        normalized = (
            f"https://www.nicovideo.jp/watch/{video_id}" if hostname == "nico.ms" else raw_url
        )
        return ParsedUrl(
            site="nicovideo",
            video_id=video_id,
            normalized_url=normalized,
            raw_url=raw_url,
        )

    return None


def _youtube_from_text(message: str) -> ParsedUrl | None:
    for regex in YOUTUBE_ID_REGEXES:
        found = regex.search(message)
        if found:
            return _youtube(found.group(1))
    return None


def _nicovideo_from_text(message: str) -> ParsedUrl | None:
    found = NICOVIDEO_ID_REGEX.search(message)
    if not found:
        return None
    video_id = found.group(1).lower()
    if video_id.startswith(("nm", "so")):
        video_id = f"sm{video_id[2:]}"
    normalized = f"https://www.nicovideo.jp/watch/{video_id}"
    return ParsedUrl(
        site="nicovideo",
        video_id=video_id,
        normalized_url=normalized,
        raw_url=normalized,
    )


def parse_request_url(message: str) -> ParsedUrl | None:
    """Extract the first recognised video from a chat message.

    Full URLs win over bare ids; bare ids are tried YouTube, then Bilibili,
    then Niconico.
    """
    for match in URL_REGEX.finditer(message):
        raw_url = TRAILING_DELIMITERS.sub("", match.group(0))
        parsed = parse_full_url(raw_url)
        if parsed:
            return parsed

    return (
        _youtube_from_text(message)
        or _bilibili(_find_bilibili_video_id(message))
        or _nicovideo_from_text(message)
    )


def compile_custom_site_regex(pattern: str) -> re.Pattern[str] | None:
    """Compile "/body/flags" or a plain (case-insensitive) pattern.

    Unknown flags such as JavaScript's g/u/y are ignored. Invalid patterns
    return None and are logged.
    """
    trimmed = pattern.strip()
    last_slash = trimmed.rfind("/")
    if trimmed.startswith("/") and last_slash > 0:
        body = trimmed[1:last_slash]
        flags = 0
        for flag in trimmed[last_slash + 1 :]:
            flags |= _REGEX_FLAGS.get(flag.lower(), 0)
    else:
        body = trimmed
        flags = re.IGNORECASE
    try:
        return re.compile(body, flags)
    except re.error as e:
        log.warning("custom_site_pattern_invalid", pattern=pattern, error=str(e))
        return None


def extract_host_from_pattern(pattern: str) -> str | None:
    """Best-effort host name for alias expansion (alias/ID → https://host/ID)."""
    trimmed = pattern.strip()
    last_slash = trimmed.rfind("/")
    if trimmed.startswith("/") and last_slash > 0:
        unescaped = re.sub(r"\\(.)", r"\1", trimmed[1:last_slash])
        found = HOST_TOKEN_REGEX.search(unescaped)
        return found.group(1).lower() if found else None
    if re.match(r"^https?://", trimmed, re.IGNORECASE):
        hostname = urlsplit(trimmed).hostname
        if hostname:
            return hostname
    candidate = re.split(r"[/(\s]", re.sub(r"^https?://", "", trimmed, flags=re.IGNORECASE))[0]
    return candidate or None


def _extend_url_match(message: str, value: str) -> str:
    """Grow a regex hit that starts with http to the next whitespace."""
    trimmed = value.strip()
    if not trimmed.startswith("http"):
        return trimmed
    start = message.find(trimmed)
    if start < 0:
        return trimmed
    end = start + len(trimmed)
    while end < len(message) and not message[end].isspace():
        end += 1
    return TRAILING_DELIMITERS.sub("", message[start:end].strip())


def _custom(normalized_url: str) -> ParsedUrl:
    # The URL itself is the identity so different links never collide
    return ParsedUrl(
        site="other",
        video_id=normalized_url,
        normalized_url=normalized_url,
        raw_url=normalized_url,
    )


def match_custom_site_url(message: str, rules: Iterable[CustomSiteRule]) -> ParsedUrl | None:
    """Match operator rules: full patterns first, then alias/ID short forms."""
    rules = list(rules)
    for rule in rules:
        regex = compile_custom_site_regex(rule.pattern)
        if regex is None:
            continue
        found = regex.search(message)
        if not found:
            continue
        whole = _extend_url_match(message, found.group(0) or "")
        primary = _extend_url_match(message, (found.group(1) if regex.groups else None) or "")
        raw_url = primary or whole
        if not raw_url:
            continue
        return _custom(raw_url if raw_url.startswith("http") else whole or raw_url)

    for rule in rules:
        if not rule.alias:
            continue
        found = re.search(rf"\b{re.escape(rule.alias)}/(\S+)", message, re.IGNORECASE | re.ASCII)
        if not found:
            continue
        host = extract_host_from_pattern(rule.pattern)
        if not host:
            continue
        video_path = TRAILING_DELIMITERS.sub("", found.group(1))
        if not video_path:
            continue
        return _custom(f"https://{host}/{video_path}")

    return None


def extract_request_url(
    message: str, custom_sites: Iterable[CustomSiteRule] = ()
) -> ParsedUrl | None:
    """Built-in parsers first, then the operator's custom site rules."""
    return parse_request_url(message) or match_custom_site_url(message, custom_sites)


PLAYLIST_QUERY_PARAMS = frozenset({"list", "start_radio", "pp"})


def sanitize_download_url(url: str) -> str:
    """Drop playlist context (list, start_radio, pp) so yt-dlp fetches one video."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.scheme or not parts.netloc:
        return url
    query = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key not in PLAYLIST_QUERY_PARAMS
    ]
    return urlunsplit(parts._replace(query=urlencode(query)))
