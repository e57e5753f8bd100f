from datetime import timedelta

import pytest

from loginguard.core.errors import TransientStoreError
from loginguard.db.models.block_entry import BlockEntry
from loginguard.db.models.known_device import KnownDevice
from loginguard.db.models.login_activity import LoginActivity
from loginguard.db.models.rate_limit import RateWindow
from loginguard.db.models.verification_challenge import VerificationChallenge
from loginguard.services import activity, blocklist, challenges, counters, engine, geo
from loginguard.services.engine import LoginAttempt
from loginguard.services.settings import update_protection_settings

from conftest import NOW

CHROME = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)
FIREFOX = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"


def _attempt(email="user@example.com", ip="10.0.0.1", user_agent=CHROME, country_code=None, user_id=None):
    return LoginAttempt(ip=ip, email=email, user_agent=user_agent, country_code=country_code, user_id=user_id)


def _no_alert(email, attempt_count, locked_until):
    return False


def _fail(db, times, attempt=None, now=NOW):
    outcome = None
    for _ in range(times):
        outcome = engine.record_failed_login(db, attempt or _attempt(), alerter=_no_alert, now=now)
    return outcome


def test_clean_attempt_is_allowed_and_logged(seeded_session, notifier, sent_codes):
    verdict = engine.evaluate(seeded_session, _attempt(country_code="FR"), notifier=notifier, now=NOW)

    assert verdict.decision == engine.DECISION_ALLOW
    assert verdict.allowed is True
    assert sent_codes == []
    row = seeded_session.query(LoginActivity).one()
    assert row.status == activity.STATUS_SUCCESS
    assert row.source == activity.SOURCE_LOGIN
    assert row.location == {"country_code": "FR"}
    assert row.device_info["browser_family"] == "Chrome"


def test_permanent_block_always_blocks(seeded_session, notifier):
    blocklist.block(seeded_session, ip="10.0.0.1", permanent=True, now=NOW)

    for minutes in (0, 60 * 24, 60 * 24 * 365):
        verdict = engine.evaluate(seeded_session, _attempt(), notifier=notifier, now=NOW + timedelta(minutes=minutes))
        assert verdict.decision == engine.DECISION_BLOCK
        assert verdict.reason == engine.REASON_BLOCK_LIST
        assert verdict.retry_after is None

    statuses = {r.status for r in seeded_session.query(LoginActivity).all()}
    assert statuses == {activity.STATUS_BLOCKED}


def test_geo_block_stops_before_rate_limit(seeded_session, notifier):
    geo.upsert_rule(seeded_session, country_code="KP", is_blocked=True)

    verdict = engine.evaluate(seeded_session, _attempt(country_code="KP"), notifier=notifier, now=NOW)

    assert verdict.decision == engine.DECISION_BLOCK
    assert verdict.reason == engine.REASON_GEO_BLOCKED
    assert seeded_session.query(RateWindow).count() == 0


def test_login_rate_limit(seeded_session, notifier):
    for _ in range(10):
        assert engine.evaluate(seeded_session, _attempt(email=None), notifier=notifier, now=NOW).allowed

    verdict = engine.evaluate(seeded_session, _attempt(email=None), notifier=notifier, now=NOW)
    assert verdict.decision == engine.DECISION_BLOCK
    assert verdict.reason == engine.REASON_RATE_LIMITED
    assert verdict.retry_after == 60

    later = engine.evaluate(seeded_session, _attempt(email=None), notifier=notifier, now=NOW + timedelta(seconds=60))
    assert later.allowed


def test_failures_escalate_to_challenge_and_verification_clears_them(seeded_session, notifier, sent_codes):
    outcome = _fail(seeded_session, 5)
    assert outcome.attempt_count == 5
    assert outcome.locked is False

    verdict = engine.evaluate(seeded_session, _attempt(), notifier=notifier, now=NOW)
    assert verdict.decision == engine.DECISION_CHALLENGE
    assert verdict.reason == engine.REASON_TOO_MANY_FAILURES
    assert verdict.code_delivered is True
    assert verdict.undelivered_code is None
    assert verdict.challenge_expires_at == NOW + timedelta(seconds=600)
    email, code, reason = sent_codes[-1]
    assert (email, reason) == ("user@example.com", engine.REASON_TOO_MANY_FAILURES)

    result = engine.complete_challenge(seeded_session, verdict.challenge_token, code, ip="10.0.0.1", now=NOW)
    assert result.verified
    assert counters.get_failure_count(seeded_session, "user@example.com", window_minutes=60, now=NOW) == 0

    assert engine.evaluate(seeded_session, _attempt(), notifier=notifier, now=NOW).allowed


def test_block_threshold_locks_the_account(seeded_session, notifier):
    outcome = _fail(seeded_session, 10)
    assert outcome.locked is True

    entry = seeded_session.query(BlockEntry).one()
    assert entry.origin == blocklist.ORIGIN_AUTO_LOCKOUT
    assert entry.email == "user@example.com"
    assert entry.blocked_until == NOW + timedelta(minutes=30)

    verdict = engine.evaluate(seeded_session, _attempt(ip="10.9.9.9"), notifier=notifier, now=NOW)
    assert verdict.reason == engine.REASON_BLOCK_LIST
    assert verdict.retry_after == 30 * 60

    # Lockout over, but the failures are still inside their window.
    lock_expired = NOW + timedelta(minutes=31)
    verdict = engine.evaluate(seeded_session, _attempt(ip="10.9.9.9"), notifier=notifier, now=lock_expired)
    assert verdict.decision == engine.DECISION_BLOCK
    assert verdict.reason == engine.REASON_TOO_MANY_FAILURES

    window_over = NOW + timedelta(minutes=61)
    assert engine.evaluate(seeded_session, _attempt(ip="10.9.9.9"), notifier=notifier, now=window_over).allowed


def test_new_device_triggers_challenge(seeded_session, notifier):
    assert engine.evaluate(seeded_session, _attempt(), notifier=notifier, now=NOW).allowed

    verdict = engine.evaluate(seeded_session, _attempt(user_agent=FIREFOX), notifier=notifier, now=NOW)
    assert verdict.decision == engine.DECISION_CHALLENGE
    assert verdict.reason == engine.REASON_NEW_DEVICE

    row = seeded_session.query(LoginActivity).order_by(LoginActivity.id.desc()).first()
    assert row.status == activity.STATUS_CHALLENGED
    assert row.failure_reason == engine.REASON_NEW_DEVICE


def test_exhausted_challenge_blocks_the_email(seeded_session, notifier):
    engine.evaluate(seeded_session, _attempt(), notifier=notifier, now=NOW)
    verdict = engine.evaluate(seeded_session, _attempt(user_agent=FIREFOX), notifier=notifier, now=NOW)

    results = [
        engine.complete_challenge(seeded_session, verdict.challenge_token, "wrong", now=NOW).status
        for _ in range(5)
    ]
    assert results == [challenges.RESULT_INVALID] * 4 + [challenges.RESULT_FAILED]

    entry = seeded_session.query(BlockEntry).one()
    assert entry.origin == blocklist.ORIGIN_CHALLENGE_FAILED
    assert entry.blocked_until == NOW + timedelta(minutes=60)
    assert engine.evaluate(seeded_session, _attempt(), notifier=notifier, now=NOW).reason == engine.REASON_BLOCK_LIST


def test_undelivered_code_is_returned_for_echo(seeded_session):
    _fail(seeded_session, 5)

    verdict = engine.evaluate(seeded_session, _attempt(), notifier=lambda email, code, reason: False, now=NOW)
    assert verdict.decision == engine.DECISION_CHALLENGE
    assert verdict.code_delivered is False
    assert verdict.undelivered_code is not None


def test_resend_challenge_notifies_again(seeded_session, notifier, sent_codes):
    _fail(seeded_session, 5)
    verdict = engine.evaluate(seeded_session, _attempt(), notifier=notifier, now=NOW)

    status, resent = engine.resend_challenge(seeded_session, verdict.challenge_token, notifier=notifier, now=NOW)
    assert status == challenges.RESEND_SENT
    assert resent.challenge_token == verdict.challenge_token
    assert len(sent_codes) == 2

    status, resent = engine.resend_challenge(seeded_session, "missing", notifier=notifier, now=NOW)
    assert status == challenges.RESULT_NOT_FOUND
    assert resent is None


def test_every_evaluation_writes_one_activity_row(seeded_session, notifier):
    blocklist.block(seeded_session, ip="10.0.0.66", permanent=True, now=NOW)
    engine.evaluate(seeded_session, _attempt(), notifier=notifier, now=NOW)
    engine.evaluate(seeded_session, _attempt(ip="10.0.0.66"), notifier=notifier, now=NOW)
    engine.evaluate(seeded_session, _attempt(user_agent=FIREFOX), notifier=notifier, now=NOW)

    assert seeded_session.query(LoginActivity).count() == 3


def test_block_list_outage_fails_open_by_default(seeded_session, notifier, monkeypatch):
    def _unavailable(*args, **kwargs):
        raise TransientStoreError("blocklist")

    monkeypatch.setattr(blocklist, "find_active_block", _unavailable)
    assert engine.evaluate(seeded_session, _attempt(), notifier=notifier, now=NOW).allowed

    update_protection_settings(seeded_session, block_list_fail_closed=True)
    verdict = engine.evaluate(seeded_session, _attempt(), notifier=notifier, now=NOW)
    assert verdict.decision == engine.DECISION_BLOCK
    assert verdict.reason == engine.REASON_BLOCK_LIST_UNAVAILABLE


def test_challenge_outage_degrades_to_allow_without_clearing_failures(seeded_session, notifier, monkeypatch):
    _fail(seeded_session, 5)

    def _unavailable(*args, **kwargs):
        raise TransientStoreError("challenges")

    monkeypatch.setattr(challenges, "issue", _unavailable)
    assert engine.evaluate(seeded_session, _attempt(), notifier=notifier, now=NOW).allowed
    assert counters.get_failure_count(seeded_session, "user@example.com", window_minutes=60, now=NOW) == 5


def test_activity_write_failure_propagates(seeded_session, notifier, monkeypatch):
    def _unavailable(*args, **kwargs):
        raise TransientStoreError("activity")

    monkeypatch.setattr(activity, "write_activity", _unavailable)
    with pytest.raises(TransientStoreError):
        engine.evaluate(seeded_session, _attempt(), notifier=notifier, now=NOW)


def test_failed_login_requires_email(seeded_session):
    with pytest.raises(ValueError):
        engine.record_failed_login(seeded_session, _attempt(email=None), now=NOW)


def test_lockout_alert_goes_out_once(seeded_session):
    alerts = []

    def _alert(email, attempt_count, locked_until):
        alerts.append((email, attempt_count, locked_until))
        return True

    outcomes = [
        engine.record_failed_login(seeded_session, _attempt(), alerter=_alert, now=NOW) for _ in range(11)
    ]

    assert [o.alert_sent for o in outcomes] == [False] * 9 + [True, False]
    assert [o.locked for o in outcomes] == [False] * 9 + [True, True]
    assert alerts == [("user@example.com", 10, NOW + timedelta(minutes=30))]


def test_device_check_can_be_switched_off(seeded_session, notifier):
    update_protection_settings(seeded_session, device_check_enabled=False)

    assert engine.evaluate(seeded_session, _attempt(), notifier=notifier, now=NOW).allowed
    assert engine.evaluate(seeded_session, _attempt(user_agent=FIREFOX), notifier=notifier, now=NOW).allowed
    assert seeded_session.query(KnownDevice).count() == 2


def test_escalation_outage_keeps_challenge_open_and_is_audited(seeded_session, notifier, monkeypatch):
    engine.evaluate(seeded_session, _attempt(), notifier=notifier, now=NOW)
    verdict = engine.evaluate(seeded_session, _attempt(user_agent=FIREFOX), notifier=notifier, now=NOW)
    for _ in range(4):
        engine.complete_challenge(seeded_session, verdict.challenge_token, "wrong", now=NOW)
    rows_before = seeded_session.query(LoginActivity).count()

    def _unavailable(*args, **kwargs):
        raise TransientStoreError("blocklist")

    monkeypatch.setattr(blocklist, "block", _unavailable)
    with pytest.raises(TransientStoreError):
        engine.complete_challenge(seeded_session, verdict.challenge_token, "wrong", now=NOW)

    assert seeded_session.query(LoginActivity).count() == rows_before + 1
    audit = seeded_session.query(LoginActivity).order_by(LoginActivity.id.desc()).first()
    assert audit.failure_reason == "store_unavailable"
    assert audit.email == "user@example.com"
    seeded_session.expire_all()
    pending = seeded_session.query(VerificationChallenge).filter_by(email="user@example.com").one()
    assert pending.status == challenges.STATE_PENDING
    assert seeded_session.query(BlockEntry).count() == 0

    monkeypatch.undo()
    retry = engine.complete_challenge(seeded_session, verdict.challenge_token, "wrong", now=NOW)
    assert retry.status == challenges.RESULT_FAILED
    assert seeded_session.query(BlockEntry).one().origin == blocklist.ORIGIN_CHALLENGE_FAILED
