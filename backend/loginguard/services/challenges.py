import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from loginguard.core.errors import TransientStoreError
from loginguard.core.security import (
    generate_challenge_token,
    generate_verification_code,
    hash_secret,
    verify_secret,
)
from loginguard.db.models.verification_challenge import VerificationChallenge
from loginguard.services import recovery_codes
from loginguard.services.counters import normalize_email

logger = logging.getLogger(__name__)

STATE_PENDING = "pending"
STATE_VERIFIED = "verified"
STATE_FAILED = "failed"
STATE_EXPIRED = "expired"
STATE_SUPERSEDED = "superseded"

RESULT_VERIFIED = "verified"
RESULT_INVALID = "invalid"
RESULT_FAILED = "failed"
RESULT_EXPIRED = "expired"
RESULT_NOT_FOUND = "not_found"
RESULT_ALREADY_RESOLVED = "already_resolved"

RESEND_SENT = "sent"
RESEND_LIMIT_REACHED = "limit_reached"

_ISSUE_RETRIES = 3

ExhaustedHook = Callable[[VerificationChallenge], None]


@dataclass(frozen=True)
class IssuedChallenge:
    challenge_id: int
    token: str
    code: str
    expires_at: datetime


@dataclass(frozen=True)
class ChallengeResult:
    status: str
    challenge: VerificationChallenge | None = None
    attempts_remaining: int | None = None
    proof_type: str | None = None

    @property
    def verified(self) -> bool:
        return self.status == RESULT_VERIFIED


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _transition(
    db: Session,
    challenge_id: int,
    state: str,
    *,
    now: datetime,
    proof_type: str | None = None,
) -> bool:
    result = db.execute(
        update(VerificationChallenge)
        .where(VerificationChallenge.id == challenge_id, VerificationChallenge.status == STATE_PENDING)
        .values(status=state, resolved_at=now, resolved_with=proof_type)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def issue(
    db: Session,
    *,
    user_id: str | None,
    email: str,
    reason: str,
    ttl_seconds: int,
    ip: str | None = None,
    user_agent: str | None = None,
    fingerprint: str | None = None,
    now: datetime | None = None,
) -> IssuedChallenge:
    email = normalize_email(email)
    if not email:
        raise ValueError("A challenge needs an email")
    now = now or _utc_now_naive()
    token = generate_challenge_token()
    code = generate_verification_code()
    expires_at = now + timedelta(seconds=ttl_seconds)

    try:
        for _ in range(_ISSUE_RETRIES):
            challenge = VerificationChallenge(
                token_hash=hash_secret(token),
                code_hash=hash_secret(code),
                user_id=user_id,
                email=email,
                reason=reason,
                status=STATE_PENDING,
                attempts=0,
                resend_count=0,
                ip=ip,
                user_agent=(user_agent or "")[:255] or None,
                fingerprint=fingerprint,
                issued_at=now,
                expires_at=expires_at,
            )
            try:
                with db.begin_nested():
                    superseded = db.execute(
                        update(VerificationChallenge)
                        .where(VerificationChallenge.email == email, VerificationChallenge.status == STATE_PENDING)
                        .values(status=STATE_SUPERSEDED, resolved_at=now)
                        .execution_options(synchronize_session=False)
                    ).rowcount
                    db.add(challenge)
                break
            except IntegrityError:
                # A concurrent issue committed its pending row first; supersede it too.
                continue
        else:
            db.rollback()
            raise TransientStoreError("challenges", "could not replace the pending challenge")
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise TransientStoreError("challenges") from exc

    logger.info(
        "challenge.issued id=%s email=%s reason=%s superseded=%s",
        challenge.id,
        email,
        reason,
        superseded,
    )
    return IssuedChallenge(challenge_id=challenge.id, token=token, code=code, expires_at=expires_at)


def get_by_token(db: Session, token: str) -> VerificationChallenge | None:
    if not token:
        return None
    return (
        db.execute(select(VerificationChallenge).where(VerificationChallenge.token_hash == hash_secret(token)))
        .scalars()
        .first()
    )


def _register_wrong_proof(
    db: Session,
    challenge: VerificationChallenge,
    *,
    max_attempts: int,
    on_exhausted: ExhaustedHook | None,
    now: datetime,
) -> ChallengeResult:
    bumped = db.execute(
        update(VerificationChallenge)
        .where(VerificationChallenge.id == challenge.id, VerificationChallenge.status == STATE_PENDING)
        .values(attempts=VerificationChallenge.attempts + 1)
        .execution_options(synchronize_session=False)
    ).rowcount
    if not bumped:
        db.rollback()
        return ChallengeResult(status=RESULT_ALREADY_RESOLVED, challenge=challenge)

    attempts = db.execute(
        select(VerificationChallenge.attempts).where(VerificationChallenge.id == challenge.id)
    ).scalar_one()
    if attempts >= max_attempts:
        if not _transition(db, challenge.id, STATE_FAILED, now=now):
            db.rollback()
            return ChallengeResult(status=RESULT_ALREADY_RESOLVED, challenge=challenge)
        if on_exhausted is not None:
            # The escalation commits together with the FAILED state or not at all.
            try:
                on_exhausted(challenge)
            except TransientStoreError:
                db.rollback()
                raise
        db.commit()
        return ChallengeResult(status=RESULT_FAILED, challenge=challenge, attempts_remaining=0)

    db.commit()
    return ChallengeResult(
        status=RESULT_INVALID,
        challenge=challenge,
        attempts_remaining=max_attempts - attempts,
    )


def resolve(
    db: Session,
    token: str,
    proof: str,
    *,
    max_attempts: int,
    on_exhausted: ExhaustedHook | None = None,
    now: datetime | None = None,
) -> ChallengeResult:
    now = now or _utc_now_naive()
    proof = (proof or "").strip()
    try:
        challenge = get_by_token(db, token)
        if challenge is None:
            return ChallengeResult(status=RESULT_NOT_FOUND)
        if challenge.status == STATE_EXPIRED:
            return ChallengeResult(status=RESULT_EXPIRED, challenge=challenge)
        if challenge.status != STATE_PENDING:
            return ChallengeResult(status=RESULT_ALREADY_RESOLVED, challenge=challenge)

        if challenge.expires_at <= now:
            _transition(db, challenge.id, STATE_EXPIRED, now=now)
            db.commit()
            return ChallengeResult(status=RESULT_EXPIRED, challenge=challenge)

        if proof and verify_secret(proof, challenge.code_hash):
            won = _transition(db, challenge.id, STATE_VERIFIED, now=now, proof_type="code")
            db.commit()
            if not won:
                return ChallengeResult(status=RESULT_ALREADY_RESOLVED, challenge=challenge)
            return ChallengeResult(status=RESULT_VERIFIED, challenge=challenge, proof_type="code")

        if proof and challenge.user_id and recovery_codes.consume_code(db, challenge.user_id, proof, now=now):
            # Code consumption and verification commit together or not at all.
            if not _transition(db, challenge.id, STATE_VERIFIED, now=now, proof_type="recovery_code"):
                db.rollback()
                return ChallengeResult(status=RESULT_ALREADY_RESOLVED, challenge=challenge)
            db.commit()
            return ChallengeResult(status=RESULT_VERIFIED, challenge=challenge, proof_type="recovery_code")

        return _register_wrong_proof(db, challenge, max_attempts=max_attempts, on_exhausted=on_exhausted, now=now)
    except SQLAlchemyError as exc:
        db.rollback()
        raise TransientStoreError("challenges") from exc


def resend(
    db: Session,
    token: str,
    *,
    ttl_seconds: int,
    max_resends: int,
    now: datetime | None = None,
) -> tuple[str, VerificationChallenge | None, IssuedChallenge | None]:
    now = now or _utc_now_naive()
    try:
        challenge = get_by_token(db, token)
        if challenge is None:
            return RESULT_NOT_FOUND, None, None
        if challenge.status == STATE_EXPIRED:
            return RESULT_EXPIRED, challenge, None
        if challenge.status != STATE_PENDING:
            return RESULT_ALREADY_RESOLVED, challenge, None
        if challenge.expires_at <= now:
            _transition(db, challenge.id, STATE_EXPIRED, now=now)
            db.commit()
            return RESULT_EXPIRED, challenge, None

        code = generate_verification_code()
        expires_at = now + timedelta(seconds=ttl_seconds)
        updated = db.execute(
            update(VerificationChallenge)
            .where(
                VerificationChallenge.id == challenge.id,
                VerificationChallenge.status == STATE_PENDING,
                VerificationChallenge.resend_count < max_resends,
            )
            .values(
                code_hash=hash_secret(code),
                expires_at=expires_at,
                resend_count=VerificationChallenge.resend_count + 1,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise TransientStoreError("challenges") from exc

    if not updated:
        if challenge.status == STATE_PENDING:
            return RESEND_LIMIT_REACHED, challenge, None
        return RESULT_ALREADY_RESOLVED, challenge, None
    return RESEND_SENT, challenge, IssuedChallenge(
        challenge_id=challenge.id,
        token=token,
        code=code,
        expires_at=expires_at,
    )
