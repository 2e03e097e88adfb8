"""Continuation poll: "keep playing or stop?" audience vote.

State machine, driven purely by deadlines passed to advance(now):

    IDLE ──start()──> AWAITING_QUESTION ──interval──> VOTING ──window──┐
                            ^                                          │
                            └──────── yes% >= no% (votes cleared) ─────┤
                                                                       │
                      RESOLVED <────────────── no% > yes% ─────────────┘
                         │
                         └── stop_delay ──> IDLE, advance() returns True
                                            (caller skips the item)

reset() returns to IDLE from anywhere. The poll holds no timers of its own;
the playback orchestrator sleeps until next_deadline and calls advance().
"""

import enum
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal

import structlog

from mediaqueue.schemas.policy import PolicyRules
from mediaqueue.services.notifications import NotificationBus

log = structlog.get_logger()

Vote = Literal["yes", "no"]

YES_WORDS = ("いいよ", "延長", "続けて", "go", "yes", "y")
NO_WORDS = ("やめよ", "やめよう", "stop", "no", "n", "やめて")


def normalize_poll_vote(text: str) -> Vote | None:
    """Substring match against the yes words first, then the no words."""
    trimmed = text.strip()
    if any(word in trimmed for word in YES_WORDS):
        return "yes"
    if any(word in trimmed for word in NO_WORDS):
        return "no"
    return None


class PollState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_QUESTION = "awaiting_question"
    VOTING = "voting"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class PollResult:
    yes: int
    no: int
    total: int
    yes_percent: int
    no_percent: int

    @property
    def winner(self) -> Vote:
        return "no" if self.no_percent > self.yes_percent else "yes"


class ContinuationPoll:
    """Per-playback poll bound to a single request id."""

    def __init__(
        self,
        notifications: NotificationBus,
        rules_provider: Callable[[], PolicyRules],
    ) -> None:
        self._notifications = notifications
        self._rules_provider = rules_provider
        self._state = PollState.IDLE
        self._request_id: str | None = None
        self._url: str | None = None
        self._deadline: datetime | None = None
        self._votes: dict[str, Vote] = {}

    @property
    def state(self) -> PollState:
        return self._state

    @property
    def request_id(self) -> str | None:
        return self._request_id

    @property
    def next_deadline(self) -> datetime | None:
        return self._deadline

    @property
    def votes(self) -> dict[str, Vote]:
        return dict(self._votes)

    def reset(self) -> None:
        if self._state != PollState.IDLE:
            log.debug("poll_reset", request_id=self._request_id, state=self._state.value)
        self._state = PollState.IDLE
        self._request_id = None
        self._url = None
        self._deadline = None
        self._votes.clear()

    def start(self, request_id: str, url: str | None, now: datetime) -> bool:
        """Arm the poll for a new playback. Returns False when polling is off."""
        self.reset()
        rules = self._rules_provider()
        if not rules.poll_enabled:
            return False
        self._request_id = request_id
        self._url = url
        self._state = PollState.AWAITING_QUESTION
        self._deadline = now + timedelta(seconds=rules.poll_interval_sec)
        log.info("poll_armed", request_id=request_id, deadline=self._deadline.isoformat())
        return True

    def vote(self, request_id: str | None, voter: str, choice: Vote) -> bool:
        """Record a vote; later votes from the same voter overwrite earlier ones."""
        if self._state != PollState.VOTING or request_id is None:
            return False
        if request_id != self._request_id:
            return False
        self._votes[voter] = choice
        return True

    def tally(self) -> PollResult:
        total = len(self._votes)
        yes = sum(1 for choice in self._votes.values() if choice == "yes")
        yes_percent = round(yes / total * 100) if total else 0
        no_percent = 100 - yes_percent if total else 0
        return PollResult(
            yes=yes,
            no=total - yes,
            total=total,
            yes_percent=yes_percent,
            no_percent=no_percent,
        )

    def advance(self, now: datetime) -> bool:
        """Apply the transition whose deadline has passed.

        Returns:
            True when the stop delay after a "no" result elapsed; the caller
            must then skip the current item.
        """
        if self._deadline is None or now < self._deadline:
            return False

        rules = self._rules_provider()
        if self._state == PollState.AWAITING_QUESTION:
            self._open_voting(now, rules)
            return False
        if self._state == PollState.VOTING:
            self._close_voting(now, rules)
            return False
        if self._state == PollState.RESOLVED:
            log.info("poll_rejected_current", request_id=self._request_id)
            self.reset()
            return True
        return False

    def _open_voting(self, now: datetime, rules: PolicyRules) -> None:
        self._votes.clear()
        self._state = PollState.VOTING
        self._deadline = now + timedelta(seconds=rules.poll_window_sec)
        self._notifications.emit(
            "info",
            title_key="poll_question_title",
            message_key="poll_question_body",
            params={"url": self._url or ""},
            request_id=self._request_id,
            duration_ms=max(5000, rules.poll_window_sec * 1000),
        )

    def _close_voting(self, now: datetime, rules: PolicyRules) -> None:
        result = self.tally()
        self._notifications.emit(
            "info",
            title_key="poll_result_title",
            message_key="poll_result_body",
            params={
                "yes": result.yes_percent,
                "no": result.no_percent,
                "total": result.total,
                "winner": result.winner,
            },
            request_id=self._request_id,
        )
        log.info(
            "poll_closed",
            request_id=self._request_id,
            yes=result.yes,
            no=result.no,
            winner=result.winner,
        )
        if result.winner == "no":
            self._state = PollState.RESOLVED
            self._deadline = now + timedelta(seconds=rules.poll_stop_delay_sec)
        else:
            self._votes.clear()
            self._state = PollState.AWAITING_QUESTION
            self._deadline = now + timedelta(seconds=rules.poll_interval_sec)
