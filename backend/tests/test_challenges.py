from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from loginguard.core.errors import TransientStoreError
from loginguard.db.models.verification_challenge import VerificationChallenge
from loginguard.services import challenges, recovery_codes

from conftest import NOW, run_concurrently

TTL = 600


def _issue(db, *, email="user@example.com", user_id=None, now=NOW):
    return challenges.issue(
        db,
        user_id=user_id,
        email=email,
        reason="new_device",
        ttl_seconds=TTL,
        ip="10.0.0.1",
        now=now,
    )


def _status(db, challenge_id):
    db.expire_all()
    return db.get(VerificationChallenge, challenge_id).status


def test_challenge_verifies_exactly_once(db_session):
    issued = _issue(db_session)

    first = challenges.resolve(db_session, issued.token, issued.code, max_attempts=5, now=NOW)
    second = challenges.resolve(db_session, issued.token, issued.code, max_attempts=5, now=NOW)

    assert first.verified is True
    assert first.proof_type == "code"
    assert second.status == challenges.RESULT_ALREADY_RESOLVED
    assert _status(db_session, issued.challenge_id) == challenges.STATE_VERIFIED


def test_code_and_token_are_stored_hashed(db_session):
    issued = _issue(db_session)
    row = db_session.get(VerificationChallenge, issued.challenge_id)

    assert row.code_hash != issued.code
    assert row.token_hash != issued.token
    assert challenges.get_by_token(db_session, issued.token).id == issued.challenge_id


def test_wrong_proof_counts_down_then_fails(db_session):
    issued = _issue(db_session)

    remaining = []
    for _ in range(2):
        result = challenges.resolve(db_session, issued.token, "wrong", max_attempts=3, now=NOW)
        assert result.status == challenges.RESULT_INVALID
        remaining.append(result.attempts_remaining)
    assert remaining == [2, 1]

    last = challenges.resolve(db_session, issued.token, "wrong", max_attempts=3, now=NOW)
    assert last.status == challenges.RESULT_FAILED
    assert last.attempts_remaining == 0

    late = challenges.resolve(db_session, issued.token, issued.code, max_attempts=3, now=NOW)
    assert late.status == challenges.RESULT_ALREADY_RESOLVED


def test_expired_challenge(db_session):
    issued = _issue(db_session)

    result = challenges.resolve(
        db_session, issued.token, issued.code, max_attempts=5, now=NOW + timedelta(seconds=TTL)
    )
    assert result.status == challenges.RESULT_EXPIRED
    assert _status(db_session, issued.challenge_id) == challenges.STATE_EXPIRED

    again = challenges.resolve(db_session, issued.token, issued.code, max_attempts=5, now=NOW)
    assert again.status == challenges.RESULT_EXPIRED


def test_unknown_token(db_session):
    assert challenges.resolve(db_session, "missing", "123456", max_attempts=5, now=NOW).status == (
        challenges.RESULT_NOT_FOUND
    )


def test_new_challenge_supersedes_pending_one(db_session):
    old = _issue(db_session)
    new = _issue(db_session, email="USER@example.com", now=NOW + timedelta(seconds=10))

    assert _status(db_session, old.challenge_id) == challenges.STATE_SUPERSEDED
    stale = challenges.resolve(db_session, old.token, old.code, max_attempts=5, now=NOW + timedelta(seconds=20))
    assert stale.status == challenges.RESULT_ALREADY_RESOLVED
    assert challenges.resolve(db_session, new.token, new.code, max_attempts=5, now=NOW + timedelta(seconds=20)).verified


def test_recovery_code_verifies_and_is_single_use(db_session):
    codes = recovery_codes.generate_codes(db_session, "u-1", count=3, now=NOW)
    issued = _issue(db_session, user_id="u-1")

    formatted = f"{codes[0][:4].lower()}-{codes[0][4:].lower()}"
    result = challenges.resolve(db_session, issued.token, formatted, max_attempts=5, now=NOW)
    assert result.verified is True
    assert result.proof_type == "recovery_code"
    assert recovery_codes.remaining_codes(db_session, "u-1") == 2

    reissued = _issue(db_session, user_id="u-1", now=NOW + timedelta(minutes=1))
    reuse = challenges.resolve(db_session, reissued.token, codes[0], max_attempts=5, now=NOW + timedelta(minutes=1))
    assert reuse.status == challenges.RESULT_INVALID
    assert recovery_codes.remaining_codes(db_session, "u-1") == 2


def test_recovery_codes_belong_to_their_user(db_session):
    codes = recovery_codes.generate_codes(db_session, "u-1", count=2, now=NOW)
    issued = _issue(db_session, user_id="u-2")

    result = challenges.resolve(db_session, issued.token, codes[0], max_attempts=5, now=NOW)
    assert result.status == challenges.RESULT_INVALID
    assert recovery_codes.remaining_codes(db_session, "u-1") == 2


def test_regenerating_recovery_codes_invalidates_previous_batch(db_session):
    old_batch = recovery_codes.generate_codes(db_session, "u-1", count=4, now=NOW)
    new_batch = recovery_codes.generate_codes(db_session, "u-1", count=4, now=NOW + timedelta(days=1))

    assert recovery_codes.remaining_codes(db_session, "u-1") == 4
    assert recovery_codes.consume_code(db_session, "u-1", old_batch[0], now=NOW) is False
    assert recovery_codes.consume_code(db_session, "u-1", new_batch[0], now=NOW) is True
    db_session.commit()
    assert recovery_codes.remaining_codes(db_session, "u-1") == 3


def test_generate_codes_validation(db_session):
    with pytest.raises(ValueError):
        recovery_codes.generate_codes(db_session, "u-1", count=0)
    with pytest.raises(ValueError):
        recovery_codes.generate_codes(db_session, "", count=5)


def test_resend_rotates_code_until_limit(db_session):
    issued = _issue(db_session)

    status, _, resent = challenges.resend(db_session, issued.token, ttl_seconds=TTL, max_resends=1, now=NOW)
    assert status == challenges.RESEND_SENT
    assert resent.token == issued.token
    assert resent.expires_at == NOW + timedelta(seconds=TTL)

    status, _, none = challenges.resend(db_session, issued.token, ttl_seconds=TTL, max_resends=1, now=NOW)
    assert status == challenges.RESEND_LIMIT_REACHED
    assert none is None

    if resent.code != issued.code:
        stale = challenges.resolve(db_session, issued.token, issued.code, max_attempts=5, now=NOW)
        assert stale.status == challenges.RESULT_INVALID
    assert challenges.resolve(db_session, issued.token, resent.code, max_attempts=5, now=NOW).verified


def test_resend_on_resolved_challenge(db_session):
    issued = _issue(db_session)
    challenges.resolve(db_session, issued.token, issued.code, max_attempts=5, now=NOW)

    status, _, resent = challenges.resend(db_session, issued.token, ttl_seconds=TTL, max_resends=3, now=NOW)
    assert status == challenges.RESULT_ALREADY_RESOLVED
    assert resent is None


def test_database_rejects_a_second_pending_challenge(db_session):
    _issue(db_session)
    db_session.add(
        VerificationChallenge(
            token_hash="manual-token",
            code_hash="manual-code",
            email="user@example.com",
            reason="new_device",
            status=challenges.STATE_PENDING,
            attempts=0,
            resend_count=0,
            issued_at=NOW,
            expires_at=NOW + timedelta(seconds=TTL),
        )
    )
    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()

    assert db_session.query(VerificationChallenge).filter_by(status=challenges.STATE_PENDING).count() == 1


def test_reissue_keeps_a_single_pending_challenge(db_session):
    for offset in range(3):
        _issue(db_session, now=NOW + timedelta(seconds=offset))

    statuses = sorted(row.status for row in db_session.query(VerificationChallenge).all())
    assert statuses == [challenges.STATE_PENDING, challenges.STATE_SUPERSEDED, challenges.STATE_SUPERSEDED]


def test_recovery_code_verifies_only_one_concurrent_challenge(file_sessions):
    with file_sessions() as db:
        codes = recovery_codes.generate_codes(db, "u-1", count=3, now=NOW)
        tokens = [_issue(db, email=f"alias{i}@example.com", user_id="u-1").token for i in range(6)]

    results = run_concurrently(
        file_sessions,
        lambda db, index: challenges.resolve(db, tokens[index], codes[0], max_attempts=5, now=NOW).status,
        times=len(tokens),
    )

    assert results.count(challenges.RESULT_VERIFIED) == 1
    assert results.count(challenges.RESULT_INVALID) == len(tokens) - 1
    with file_sessions() as db:
        assert recovery_codes.remaining_codes(db, "u-1") == 2


def test_failed_escalation_rolls_back_the_failed_state(db_session):
    issued = _issue(db_session)
    challenges.resolve(db_session, issued.token, "wrong", max_attempts=2, now=NOW)

    def _unavailable(challenge):
        raise TransientStoreError("blocklist")

    with pytest.raises(TransientStoreError):
        challenges.resolve(db_session, issued.token, "wrong", max_attempts=2, on_exhausted=_unavailable, now=NOW)
    assert _status(db_session, issued.challenge_id) == challenges.STATE_PENDING
    assert db_session.get(VerificationChallenge, issued.challenge_id).attempts == 1

    escalated = []
    result = challenges.resolve(
        db_session, issued.token, "wrong", max_attempts=2, on_exhausted=escalated.append, now=NOW
    )
    assert result.status == challenges.RESULT_FAILED
    assert [c.id for c in escalated] == [issued.challenge_id]
    assert _status(db_session, issued.challenge_id) == challenges.STATE_FAILED
