"""
Tests for session correlation in the ledger.

Sessions are correlated by (subject, credential instance), closed at most
once, and never fabricated by a stray logout.
"""
from datetime import datetime, timedelta

import pytest

from taskledger.models.enums import Role, SessionAction, SessionStatus
from taskledger.services.errors import InvalidRequest, NotFound
from taskledger.services.principal import Principal
from taskledger.services.session_ledger import SessionLedger, session_duration_minutes


class TestRecordLogin:

    def test_login_opens_active_session_with_snapshot(self, db_session, clock, alice):
        ledger = SessionLedger(db_session, clock=clock)

        event = ledger.record_login(alice, "c1", "10.0.0.5", "Mozilla/5.0")

        assert event.id is not None
        assert event.action == SessionAction.LOGIN
        assert event.status == SessionStatus.ACTIVE
        assert event.login_time == clock.start
        assert event.logout_time is None
        assert event.session_duration_minutes is None
        assert event.subject_id == "u1"
        assert event.display_name == "Alice Moreau"
        assert event.email == "alice@example.com"
        assert event.role == Role.USER
        assert event.source_address == "10.0.0.5"
        assert event.client_agent == "Mozilla/5.0"

    def test_display_name_falls_back_to_email_local_part(self, db_session, clock):
        ledger = SessionLedger(db_session, clock=clock)
        principal = Principal(subject_id="u9", role=Role.USER, email="bob.k@example.com")

        event = ledger.record_login(principal, "c9")

        assert event.display_name == "bob.k"

    def test_later_profile_change_does_not_rewrite_history(self, db_session, clock, alice):
        """
        INVARIANT: identity on a ledger row is a snapshot, not a live reference.
        """
        ledger = SessionLedger(db_session, clock=clock)
        first = ledger.record_login(alice, "c1")

        renamed = Principal(subject_id="u1", role=Role.ADMIN, email="alice@corp.example", name="Alice M.")
        clock.advance(hours=1)
        ledger.record_login(renamed, "c2")

        first = ledger.get_event(first.id)
        assert first.display_name == "Alice Moreau"
        assert first.email == "alice@example.com"
        assert first.role == Role.USER

    def test_login_requires_credential_instance(self, db_session, clock, alice):
        with pytest.raises(InvalidRequest):
            SessionLedger(db_session, clock=clock).record_login(alice, "")

    def test_failed_login_is_audit_only(self, db_session, clock):
        """
        INVARIANT: failed_login entries have no times and no status.
        """
        ledger = SessionLedger(db_session, clock=clock)

        event = ledger.record_failed_login("mallory@example.com", Role.ADMIN, "10.9.9.9", "curl/8")

        assert event.action == SessionAction.FAILED_LOGIN
        assert event.status is None
        assert event.login_time is None
        assert event.logout_time is None
        assert event.subject_id is None
        assert event.role == Role.ADMIN
        assert event.created_at == clock.start


class TestRecordLogout:

    def test_logout_closes_session_with_duration(self, db_session, clock, alice):
        """
        INVARIANT: duration == round((logout - login) / 60s) and is >= 0.
        """
        ledger = SessionLedger(db_session, clock=clock)
        login = ledger.record_login(alice, "c1")

        clock.advance(minutes=42, seconds=20)
        closed = ledger.record_logout("u1", "c1")

        assert closed.id == login.id
        assert closed.status == SessionStatus.LOGGED_OUT
        assert closed.logout_time == clock.start + timedelta(minutes=42, seconds=20)
        assert closed.session_duration_minutes == 42

    def test_immediate_logout_has_zero_duration(self, db_session, clock, alice):
        ledger = SessionLedger(db_session, clock=clock)
        ledger.record_login(alice, "c1")

        closed = ledger.record_logout("u1", "c1")

        assert closed.session_duration_minutes == 0

    def test_second_logout_is_a_noop(self, db_session, clock, alice):
        """
        INVARIANT: a replayed logout returns None and changes nothing.
        """
        ledger = SessionLedger(db_session, clock=clock)
        login = ledger.record_login(alice, "c1")
        clock.advance(minutes=10)
        ledger.record_logout("u1", "c1")

        clock.advance(minutes=30)
        assert ledger.record_logout("u1", "c1") is None

        event = ledger.get_event(login.id)
        assert event.logout_time == clock.start + timedelta(minutes=10)
        assert event.session_duration_minutes == 10

    def test_logout_without_session_is_not_an_error(self, db_session, clock, alice):
        ledger = SessionLedger(db_session, clock=clock)
        ledger.record_login(alice, "c1")

        assert ledger.record_logout("u1", "unknown-credential") is None
        assert ledger.record_logout("someone-else", "c1") is None
        assert ledger.record_logout("u1", None) is None

    def test_logout_only_closes_its_own_device(self, db_session, clock, alice):
        """
        Scenario: u1 logs in with c1 at T0 and with c2 at T1; logging out c1 at
        T2 closes only the c1 session.
        """
        ledger = SessionLedger(db_session, clock=clock)
        first = ledger.record_login(alice, "c1")
        clock.advance(minutes=5)
        second = ledger.record_login(alice, "c2")
        clock.advance(minutes=5)

        closed = ledger.record_logout("u1", "c1")

        assert closed.id == first.id
        assert closed.session_duration_minutes == 10
        assert ledger.get_event(second.id).status == SessionStatus.ACTIVE

    def test_logout_closes_most_recent_active_login(self, db_session, clock, make_event):
        older = make_event(created_at=clock.start, login_time=clock.start)
        newer = make_event(created_at=clock.start + timedelta(minutes=1), login_time=clock.start + timedelta(minutes=1))
        ledger = SessionLedger(db_session, clock=clock)
        clock.advance(minutes=3)

        closed = ledger.record_logout("u1", "c1")

        assert closed.id == newer.id
        assert closed.session_duration_minutes == 2
        assert ledger.get_event(older.id).status == SessionStatus.ACTIVE

    def test_lost_close_race_does_not_fabricate_a_session(self, db_session, clock, alice, monkeypatch):
        """
        Two logouts race for the same session: the loser sees nothing left to
        close and returns None; the winner's duration stands.
        """
        ledger = SessionLedger(db_session, clock=clock)
        login = ledger.record_login(alice, "c1")
        clock.advance(minutes=7)

        original = ledger._latest_active_login
        raced = []

        def racing_lookup(subject_id, credential_instance_id):
            found = original(subject_id, credential_instance_id)
            if found is not None and not raced:
                raced.append(True)
                SessionLedger(db_session, clock=clock).record_logout(subject_id, credential_instance_id)
            return found

        monkeypatch.setattr(ledger, "_latest_active_login", racing_lookup)

        assert ledger.record_logout("u1", "c1") is None

        event = ledger.get_event(login.id)
        assert event.status == SessionStatus.LOGGED_OUT
        assert event.session_duration_minutes == 7


class TestExpireByCredential:

    def test_expire_marks_active_sessions_expired(self, db_session, clock, alice):
        ledger = SessionLedger(db_session, clock=clock)
        login = ledger.record_login(alice, "c1")

        assert ledger.expire_by_credential("c1") == 1

        event = ledger.get_event(login.id)
        assert event.status == SessionStatus.EXPIRED
        # Abandoned, not gracefully closed
        assert event.logout_time is None
        assert event.session_duration_minutes is None

    def test_expire_is_idempotent(self, db_session, clock, alice):
        ledger = SessionLedger(db_session, clock=clock)
        ledger.record_login(alice, "c1")
        ledger.expire_by_credential("c1")

        assert ledger.expire_by_credential("c1") == 0

    def test_expire_leaves_closed_and_other_sessions_alone(self, db_session, clock, alice):
        ledger = SessionLedger(db_session, clock=clock)
        closed = ledger.record_login(alice, "c1")
        ledger.record_logout("u1", "c1")
        reopened = ledger.record_login(alice, "c1")
        other = ledger.record_login(alice, "c2")

        assert ledger.expire_by_credential("c1") == 1

        assert ledger.get_event(closed.id).status == SessionStatus.LOGGED_OUT
        assert ledger.get_event(reopened.id).status == SessionStatus.EXPIRED
        assert ledger.get_event(other.id).status == SessionStatus.ACTIVE

    def test_late_logout_after_expiry_is_a_noop(self, db_session, clock, alice):
        """An expired session never gets a duration from a late logout."""
        ledger = SessionLedger(db_session, clock=clock)
        login = ledger.record_login(alice, "c1")
        ledger.expire_by_credential("c1")
        clock.advance(minutes=15)

        assert ledger.record_logout("u1", "c1") is None
        assert ledger.get_event(login.id).session_duration_minutes is None


class TestSessionDuration:

    @pytest.mark.parametrize("seconds,expected", [
        (0, 0),
        (29, 0),
        (30, 1),
        (89, 1),
        (90, 2),
        (3600, 60),
    ])
    def test_rounds_half_up(self, seconds, expected):
        login = datetime(2026, 1, 1, 12, 0, 0)
        assert session_duration_minutes(login, login + timedelta(seconds=seconds)) == expected

    def test_clock_skew_floors_at_zero(self):
        login = datetime(2026, 1, 1, 12, 0, 0)
        assert session_duration_minutes(login, login - timedelta(minutes=5)) == 0


def test_get_event_missing_raises_not_found(db_session, clock):
    with pytest.raises(NotFound):
        SessionLedger(db_session, clock=clock).get_event(999)
