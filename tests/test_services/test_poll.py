"""Tests for the continuation poll state machine.

Priority: P0 - A "no" majority force-skips the playing item.
"""

from datetime import datetime, timedelta, timezone

import pytest

from mediaqueue.schemas.policy import PolicyRules
from mediaqueue.services.notifications import NotificationBus
from mediaqueue.services.poll import ContinuationPoll, PollState, normalize_poll_vote

T0 = datetime(2024, 1, 1, 20, 0, 0, tzinfo=timezone.utc)
RULES = PolicyRules(
    poll_enabled=True, poll_interval_sec=90, poll_window_sec=20, poll_stop_delay_sec=10
)


@pytest.fixture
def bus() -> NotificationBus:
    return NotificationBus()


@pytest.fixture
def poll(bus) -> ContinuationPoll:
    return ContinuationPoll(bus, lambda: RULES)


def _open_voting(poll: ContinuationPoll) -> datetime:
    poll.start("req_1", "https://youtu.be/dQw4w9WgXcQ", T0)
    opened = T0 + timedelta(seconds=90)
    assert poll.advance(opened) is False
    assert poll.state == PollState.VOTING
    return opened


class TestVoteWords:
    @pytest.mark.parametrize("text", ["yes", "いいよ", "延長して", "go go"])
    def test_p1_yes_words(self, text):
        assert normalize_poll_vote(text) == "yes"

    @pytest.mark.parametrize("text", ["no", "stop", "やめて", "やめよう"])
    def test_p1_no_words(self, text):
        assert normalize_poll_vote(text) == "no"

    def test_p2_unrelated_text(self):
        assert normalize_poll_vote("lol") is None


class TestPollLifecycle:
    def test_p0_no_majority_skips_after_stop_delay(self, poll, bus):
        """[P0] 2 yes / 3 no → "no" wins, skip after poll_stop_delay_sec."""
        # GIVEN: An open voting window
        opened = _open_voting(poll)

        # WHEN: 2 yes and 3 no votes, then the window closes
        for voter in ("a", "b"):
            poll.vote("req_1", voter, "yes")
        for voter in ("c", "d", "e"):
            poll.vote("req_1", voter, "no")
        closed = opened + timedelta(seconds=20)
        assert poll.advance(closed) is False

        # THEN: Result announced, resolved with a stop delay
        result = bus.history[-1]
        assert result.title_key == "poll_result_title"
        assert result.params == {"yes": 40, "no": 60, "total": 5, "winner": "no"}
        assert poll.state == PollState.RESOLVED
        assert poll.advance(closed + timedelta(seconds=9)) is False

        # THEN: Stop delay elapsed → caller must skip
        assert poll.advance(closed + timedelta(seconds=10)) is True
        assert poll.state == PollState.IDLE
        assert poll.request_id is None

    def test_p1_tie_keeps_playing_and_schedules_next_cycle(self, poll):
        opened = _open_voting(poll)
        poll.vote("req_1", "a", "yes")
        poll.vote("req_1", "b", "no")

        closed = opened + timedelta(seconds=20)
        poll.advance(closed)

        assert poll.state == PollState.AWAITING_QUESTION
        assert poll.next_deadline == closed + timedelta(seconds=90)
        assert poll.votes == {}

    def test_p1_no_votes_is_zero_zero_and_yes_wins(self, poll, bus):
        opened = _open_voting(poll)

        poll.advance(opened + timedelta(seconds=20))

        assert bus.history[-1].params == {"yes": 0, "no": 0, "total": 0, "winner": "yes"}
        assert poll.state == PollState.AWAITING_QUESTION

    def test_p1_later_vote_overwrites(self, poll):
        _open_voting(poll)

        poll.vote("req_1", "a", "yes")
        poll.vote("req_1", "a", "no")

        assert poll.votes == {"a": "no"}

    def test_p1_votes_outside_window_or_for_other_item_are_ignored(self, poll):
        poll.start("req_1", None, T0)
        assert poll.vote("req_1", "a", "yes") is False

        poll.advance(T0 + timedelta(seconds=90))
        assert poll.vote("req_other", "a", "yes") is False
        assert poll.vote(None, "a", "yes") is False

    def test_p1_question_notice_carries_window_duration(self, poll, bus):
        _open_voting(poll)

        question = bus.history[-1]
        assert question.title_key == "poll_question_title"
        assert question.duration_ms == 20000

    def test_p2_disabled_poll_never_arms(self, bus):
        poll = ContinuationPoll(bus, lambda: PolicyRules(poll_enabled=False))

        assert poll.start("req_1", None, T0) is False
        assert poll.state == PollState.IDLE
        assert poll.advance(T0 + timedelta(hours=1)) is False

    def test_p2_restart_clears_previous_cycle(self, poll):
        _open_voting(poll)
        poll.vote("req_1", "a", "no")

        poll.start("req_2", None, T0)

        assert poll.request_id == "req_2"
        assert poll.state == PollState.AWAITING_QUESTION
        assert poll.votes == {}
