"""
Unit tests for the wager model and lifecycle state machine.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from arbiter.core.retry import InvalidState
from arbiter.domain.wager import (
    TRANSITIONS,
    Position,
    ResolutionStatus,
    Side,
    WagerKind,
    WagerStatus,
    can_transition,
    creator_position_for,
    ensure_transition,
    format_ts,
    parse_ts,
)
from tests.helpers import ACCEPTOR_ADDRESS, ACCEPTOR_ID, CREATOR_ID, NOW, crypto_wager, matched, sports_wager


class TestTransitions:
    """Tests for the lifecycle graph."""

    @pytest.mark.parametrize(
        "current,target",
        [
            (WagerStatus.OPEN, WagerStatus.ACTIVE),
            (WagerStatus.OPEN, WagerStatus.CANCELLED),
            (WagerStatus.ACTIVE, WagerStatus.RESOLVED),
            (WagerStatus.ACTIVE, WagerStatus.CANCELLED),
            (WagerStatus.MATCHED, WagerStatus.RESOLVED),
            (WagerStatus.CANCELLED, WagerStatus.RESOLVED),
            (WagerStatus.CANCELLED, WagerStatus.EXPIRED),
        ],
    )
    def test_allowed_edges(self, current, target):
        assert can_transition(current, target) is True
        ensure_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (WagerStatus.ACTIVE, WagerStatus.OPEN),
            (WagerStatus.CANCELLED, WagerStatus.OPEN),
            (WagerStatus.CANCELLED, WagerStatus.ACTIVE),
            (WagerStatus.RESOLVED, WagerStatus.ACTIVE),
            (WagerStatus.RESOLVED, WagerStatus.CANCELLED),
            (WagerStatus.EXPIRED, WagerStatus.CANCELLED),
            (WagerStatus.OPEN, WagerStatus.RESOLVED),
        ],
    )
    def test_backward_and_skipping_edges_rejected(self, current, target):
        assert can_transition(current, target) is False
        with pytest.raises(InvalidState):
            ensure_transition(current, target)

    def test_terminal_states_have_no_exits(self):
        assert TRANSITIONS[WagerStatus.RESOLVED] == frozenset()
        assert TRANSITIONS[WagerStatus.EXPIRED] == frozenset()

    def test_nothing_returns_to_open(self):
        for targets in TRANSITIONS.values():
            assert WagerStatus.OPEN not in targets

    def test_same_status_is_allowed(self):
        assert can_transition(WagerStatus.CANCELLED, WagerStatus.CANCELLED) is True


class TestPositions:
    """Tests for position derivation."""

    def test_crypto_position_follows_direction(self):
        assert creator_position_for(WagerKind.CRYPTO, prediction_type="above") == Position.ABOVE
        assert creator_position_for(WagerKind.CRYPTO, prediction_type="below") == Position.BELOW

    def test_sports_position_home_for_team1(self):
        assert creator_position_for(WagerKind.SPORTS, prediction="lakers ", team1="Lakers") == Position.HOME
        assert creator_position_for(WagerKind.SPORTS, prediction="Celtics", team1="Lakers") == Position.AWAY

    def test_complements(self):
        assert Position.ABOVE.complement == Position.BELOW
        assert Position.BELOW.complement == Position.ABOVE
        assert Position.HOME.complement == Position.AWAY
        assert Position.AWAY.complement == Position.HOME


class TestWagerRecord:
    """Tests for derived Wager properties."""

    def test_open_wager_flags(self):
        wager = crypto_wager()
        assert wager.total_stake == Decimal("2")
        assert wager.is_matched is False
        assert wager.is_settled is False
        assert wager.is_claimed is False

    def test_matched_wager_parties(self):
        wager = matched(sports_wager())
        assert wager.is_matched is True
        assert wager.party(Side.CREATOR) == (CREATOR_ID, wager.creator_address)
        assert wager.party(Side.ACCEPTOR) == (ACCEPTOR_ID, ACCEPTOR_ADDRESS)
        assert wager.position_of(Side.ACCEPTOR) == Position.AWAY
        assert wager.subject == "Lakers vs Celtics"

    def test_settled_when_completed_or_refunded(self):
        assert crypto_wager(resolution_status=ResolutionStatus.COMPLETED).is_settled is True
        assert crypto_wager(refund_processed=True).is_settled is True
        assert crypto_wager(resolution_status=ResolutionStatus.PROCESSING).is_claimed is True

    def test_deadline_is_inclusive(self):
        wager = crypto_wager(expiry_time=NOW)
        assert wager.is_past_deadline(NOW) is True
        assert wager.is_past_deadline(NOW - timedelta(microseconds=1)) is False


class TestTimestamps:
    """Tests for ledger timestamp helpers."""

    def test_format_is_fixed_width_utc(self):
        text = format_ts(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
        assert text == "2026-03-01T12:00:00.000000+00:00"

    def test_format_converts_offsets(self):
        eastern = timezone(timedelta(hours=-5))
        assert format_ts(datetime(2026, 3, 1, 7, 0, tzinfo=eastern)) == "2026-03-01T12:00:00.000000+00:00"

    def test_parse_accepts_z_suffix_and_naive(self):
        assert parse_ts("2026-03-01T12:00:00Z") == NOW
        assert parse_ts("2026-03-01T12:00:00") == NOW
        assert parse_ts(NOW) == NOW

    def test_roundtrip_preserves_ordering(self):
        earlier = format_ts(NOW)
        later = format_ts(NOW + timedelta(microseconds=5))
        assert earlier < later
        assert parse_ts(later) - parse_ts(earlier) == timedelta(microseconds=5)
