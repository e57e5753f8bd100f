import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from loginguard.core.errors import TransientStoreError
from loginguard.core.metrics import increment_counter
from loginguard.core.notifications import send_lockout_alert_email, send_verification_code_email
from loginguard.core.observability import log_business_event
from loginguard.db.models.verification_challenge import VerificationChallenge
from loginguard.services import activity, blocklist, challenges, counters, device, geo, rate_limiter
from loginguard.services.settings import LOGIN_ENDPOINT, PolicySettings, default_policy_settings, get_protection_settings

logger = logging.getLogger(__name__)

DECISION_ALLOW = "allow"
DECISION_BLOCK = "block"
DECISION_CHALLENGE = "challenge"

REASON_OK = "ok"
REASON_BLOCK_LIST = "block_list"
REASON_BLOCK_LIST_UNAVAILABLE = "block_list_unavailable"
REASON_GEO_BLOCKED = "geo_blocked"
REASON_RATE_LIMITED = "rate_limited"
REASON_TOO_MANY_FAILURES = "too_many_failed_attempts"
REASON_NEW_DEVICE = "new_device"
REASON_INVALID_CREDENTIALS = "invalid_credentials"

_STATUS_BY_DECISION = {
    DECISION_ALLOW: activity.STATUS_SUCCESS,
    DECISION_BLOCK: activity.STATUS_BLOCKED,
    DECISION_CHALLENGE: activity.STATUS_CHALLENGED,
}

Notifier = Callable[[str, str, str], bool]
LockoutAlerter = Callable[[str, int, datetime | None], bool]


@dataclass(frozen=True)
class LoginAttempt:
    ip: str | None
    email: str | None = None
    user_agent: str | None = None
    country_code: str | None = None
    user_id: str | None = None
    request_id: str | None = None


@dataclass(frozen=True)
class Verdict:
    decision: str
    reason: str
    retry_after: int | None = None
    challenge_token: str | None = None
    challenge_expires_at: datetime | None = None
    code_delivered: bool | None = None
    # Set only when delivery failed, for development echo.
    undelivered_code: str | None = None

    @property
    def allowed(self) -> bool:
        return self.decision == DECISION_ALLOW


@dataclass(frozen=True)
class FailureOutcome:
    attempt_count: int
    locked: bool
    alert_sent: bool = False


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _degraded(component: str, request_id: str | None, exc: Exception) -> None:
    increment_counter("store_degraded_total", component=component)
    logger.warning("Degrading %s check request_id=%s", component, request_id or "-", exc_info=exc)


def _load_policy(db: Session, request_id: str | None) -> PolicySettings:
    try:
        return get_protection_settings(db)
    except TransientStoreError as exc:
        _degraded("settings", request_id, exc)
        return default_policy_settings()


def _block(reason: str, *, retry_after: int | None = None) -> Verdict:
    return Verdict(decision=DECISION_BLOCK, reason=reason, retry_after=retry_after)


def _seconds_until(moment: datetime | None, now: datetime) -> int | None:
    if moment is None:
        return None
    return max(1, int((moment - now).total_seconds()))


def _issue_challenge(
    db: Session,
    attempt: LoginAttempt,
    email: str,
    reason: str,
    info: device.DeviceInfo,
    policy: PolicySettings,
    notifier: Notifier,
    now: datetime,
) -> Verdict | None:
    try:
        issued = challenges.issue(
            db,
            user_id=attempt.user_id,
            email=email,
            reason=reason,
            ttl_seconds=policy.challenge_ttl_seconds,
            ip=attempt.ip,
            user_agent=attempt.user_agent,
            fingerprint=info.fingerprint,
            now=now,
        )
    except TransientStoreError as exc:
        _degraded("challenges", attempt.request_id, exc)
        return None

    delivered = notifier(email, issued.code, reason)
    increment_counter("challenge_issued_total", reason=reason, delivered=str(delivered).lower())
    return Verdict(
        decision=DECISION_CHALLENGE,
        reason=reason,
        challenge_token=issued.token,
        challenge_expires_at=issued.expires_at,
        code_delivered=delivered,
        undelivered_code=None if delivered else issued.code,
    )


def _decide(
    db: Session,
    attempt: LoginAttempt,
    email: str | None,
    info: device.DeviceInfo,
    policy: PolicySettings,
    notifier: Notifier,
    now: datetime,
) -> Verdict:
    rid = attempt.request_id

    try:
        entry = blocklist.find_active_block(db, ip=attempt.ip, email=email, now=now)
        if entry is not None:
            return _block(REASON_BLOCK_LIST, retry_after=_seconds_until(entry.blocked_until, now))
    except TransientStoreError as exc:
        _degraded("blocklist", rid, exc)
        if policy.block_list_fail_closed:
            return _block(REASON_BLOCK_LIST_UNAVAILABLE)

    if attempt.country_code:
        try:
            if geo.is_country_blocked(db, attempt.country_code):
                return _block(REASON_GEO_BLOCKED)
        except TransientStoreError as exc:
            _degraded("geo", rid, exc)

    if attempt.ip:
        try:
            rate = rate_limiter.consume(db, attempt.ip, LOGIN_ENDPOINT, now=now)
            if not rate.allowed:
                return _block(REASON_RATE_LIMITED, retry_after=rate.retry_after(now))
        except TransientStoreError as exc:
            _degraded("rate_limiter", rid, exc)

    if not email:
        return Verdict(decision=DECISION_ALLOW, reason=REASON_OK)

    failure_count = 0
    challenge_reason: str | None = None
    try:
        failure_count = counters.get_failure_count(
            db, email, window_minutes=policy.failure_window_minutes, now=now
        )
    except TransientStoreError as exc:
        _degraded("counters", rid, exc)
    if failure_count >= policy.block_failure_threshold:
        return _block(REASON_TOO_MANY_FAILURES)
    if failure_count >= policy.challenge_failure_threshold:
        challenge_reason = REASON_TOO_MANY_FAILURES

    if challenge_reason is None and policy.device_check_enabled:
        try:
            if device.is_novel_device(db, email, info):
                challenge_reason = REASON_NEW_DEVICE
        except TransientStoreError as exc:
            _degraded("devices", rid, exc)

    if challenge_reason is not None:
        verdict = _issue_challenge(db, attempt, email, challenge_reason, info, policy, notifier, now)
        if verdict is not None:
            return verdict

    if failure_count > 0 and challenge_reason is None:
        try:
            counters.clear_failures(db, email)
        except TransientStoreError as exc:
            _degraded("counters", rid, exc)
    try:
        device.remember_device(db, email, info, limit=policy.known_device_limit, now=now)
    except TransientStoreError as exc:
        _degraded("devices", rid, exc)
    return Verdict(decision=DECISION_ALLOW, reason=REASON_OK)


def evaluate(
    db: Session,
    attempt: LoginAttempt,
    *,
    notifier: Notifier = send_verification_code_email,
    now: datetime | None = None,
) -> Verdict:
    now = now or _utc_now_naive()
    email = counters.normalize_email(attempt.email) or None
    info = device.extract(attempt.user_agent)
    policy = _load_policy(db, attempt.request_id)

    verdict = _decide(db, attempt, email, info, policy, notifier, now)

    activity.write_activity(
        db,
        status=_STATUS_BY_DECISION[verdict.decision],
        source=activity.SOURCE_LOGIN,
        email=email,
        user_id=attempt.user_id,
        ip=attempt.ip,
        user_agent=attempt.user_agent,
        device_info=info.as_dict(),
        country_code=attempt.country_code,
        failure_reason=None if verdict.allowed else verdict.reason,
        request_id=attempt.request_id,
        now=now,
    )
    increment_counter("login_decision_total", decision=verdict.decision, reason=verdict.reason)
    log_business_event(
        logger,
        event="login.evaluate",
        request_id=attempt.request_id,
        decision=verdict.decision,
        reason=verdict.reason,
        email=email,
        ip=attempt.ip,
        country=attempt.country_code,
        device=info.fingerprint,
    )
    return verdict


def record_failed_login(
    db: Session,
    attempt: LoginAttempt,
    *,
    reason: str = REASON_INVALID_CREDENTIALS,
    alerter: LockoutAlerter = send_lockout_alert_email,
    now: datetime | None = None,
) -> FailureOutcome:
    """Account for a failed credential check made outside the engine.

    The account owner is alerted once, on the failure that first reaches the
    block threshold. Later failures extend the lockout silently.
    """
    now = now or _utc_now_naive()
    email = counters.normalize_email(attempt.email)
    if not email:
        raise ValueError("A failed login needs an email")
    info = device.extract(attempt.user_agent)
    policy = _load_policy(db, attempt.request_id)

    count = counters.increment_failure(
        db,
        email,
        window_minutes=policy.failure_window_minutes,
        ip=attempt.ip,
        user_agent=attempt.user_agent,
        now=now,
    )
    locked = False
    alert_sent = False
    if count >= policy.block_failure_threshold:
        entry = blocklist.block(
            db,
            email=email,
            reason=f"{count} failed login attempts",
            until=now + timedelta(minutes=policy.lockout_minutes),
            origin=blocklist.ORIGIN_AUTO_LOCKOUT,
            extend_only=True,
            now=now,
        )
        locked = True
        if count == policy.block_failure_threshold:
            locked_until = None if entry.is_permanent else entry.blocked_until
            alert_sent = alerter(email, count, locked_until)
            increment_counter("lockout_alert_total", delivered=str(alert_sent).lower())

    activity.write_activity(
        db,
        status=activity.STATUS_FAILED,
        source=activity.SOURCE_FAILURE,
        email=email,
        user_id=attempt.user_id,
        ip=attempt.ip,
        user_agent=attempt.user_agent,
        device_info=info.as_dict(),
        country_code=attempt.country_code,
        failure_reason=reason,
        request_id=attempt.request_id,
        now=now,
    )
    increment_counter("login_failure_total", locked=str(locked).lower())
    log_business_event(
        logger,
        event="login.failure",
        request_id=attempt.request_id,
        email=email,
        ip=attempt.ip,
        attempt_count=count,
        locked=locked,
        alert_sent=alert_sent,
    )
    return FailureOutcome(attempt_count=count, locked=locked, alert_sent=alert_sent)


_CHALLENGE_ACTIVITY = {
    challenges.RESULT_VERIFIED: (activity.STATUS_SUCCESS, None),
    challenges.RESULT_INVALID: (activity.STATUS_FAILED, "invalid_proof"),
    challenges.RESULT_FAILED: (activity.STATUS_BLOCKED, "challenge_retry_exhausted"),
    challenges.RESULT_EXPIRED: (activity.STATUS_FAILED, "challenge_expired"),
    challenges.RESULT_NOT_FOUND: (activity.STATUS_FAILED, "challenge_not_found"),
    challenges.RESULT_ALREADY_RESOLVED: (activity.STATUS_FAILED, "challenge_already_resolved"),
}


def complete_challenge(
    db: Session,
    token: str,
    proof: str,
    *,
    ip: str | None = None,
    user_agent: str | None = None,
    request_id: str | None = None,
    now: datetime | None = None,
) -> challenges.ChallengeResult:
    now = now or _utc_now_naive()
    policy = _load_policy(db, request_id)
    exhausted: dict[str, str] = {}

    def _escalate(failed: VerificationChallenge) -> None:
        exhausted["email"] = failed.email
        blocklist.block(
            db,
            email=failed.email,
            reason="verification challenge failed",
            until=now + timedelta(minutes=policy.challenge_block_minutes),
            origin=blocklist.ORIGIN_CHALLENGE_FAILED,
            extend_only=True,
            commit=False,
            now=now,
        )

    try:
        result = challenges.resolve(
            db,
            token,
            proof,
            max_attempts=policy.challenge_max_attempts,
            on_exhausted=_escalate,
            now=now,
        )
    except TransientStoreError:
        activity.write_activity(
            db,
            status=activity.STATUS_FAILED,
            source=activity.SOURCE_CHALLENGE,
            email=exhausted.get("email"),
            ip=ip,
            user_agent=user_agent,
            failure_reason="store_unavailable",
            request_id=request_id,
            now=now,
        )
        raise
    challenge = result.challenge
    email = challenge.email if challenge is not None else None

    if result.status == challenges.RESULT_VERIFIED:
        try:
            counters.clear_failures(db, email)
        except TransientStoreError as exc:
            _degraded("counters", request_id, exc)
        try:
            device.remember_device(
                db,
                email,
                device.extract(challenge.user_agent),
                limit=policy.known_device_limit,
                now=now,
            )
        except TransientStoreError as exc:
            _degraded("devices", request_id, exc)

    status, failure_reason = _CHALLENGE_ACTIVITY[result.status]
    activity.write_activity(
        db,
        status=status,
        source=activity.SOURCE_CHALLENGE,
        email=email,
        user_id=challenge.user_id if challenge is not None else None,
        ip=ip,
        user_agent=user_agent,
        device_info=device.extract(user_agent).as_dict() if user_agent else None,
        failure_reason=failure_reason,
        request_id=request_id,
        now=now,
    )
    increment_counter("challenge_resolution_total", status=result.status)
    log_business_event(
        logger,
        event="login.challenge",
        request_id=request_id,
        result=result.status,
        email=email,
        proof=result.proof_type,
    )
    return result


def record_challenge_rate_limited(
    db: Session,
    *,
    ip: str | None,
    user_agent: str | None = None,
    request_id: str | None = None,
    now: datetime | None = None,
) -> None:
    activity.write_activity(
        db,
        status=activity.STATUS_BLOCKED,
        source=activity.SOURCE_CHALLENGE,
        ip=ip,
        user_agent=user_agent,
        device_info=device.extract(user_agent).as_dict() if user_agent else None,
        failure_reason=REASON_RATE_LIMITED,
        request_id=request_id,
        now=now,
    )
    increment_counter("challenge_resolution_total", status=REASON_RATE_LIMITED)
    log_business_event(logger, event="login.challenge", request_id=request_id, result=REASON_RATE_LIMITED, ip=ip)


def resend_challenge(
    db: Session,
    token: str,
    *,
    notifier: Notifier = send_verification_code_email,
    request_id: str | None = None,
    now: datetime | None = None,
) -> tuple[str, Verdict | None]:
    policy = _load_policy(db, request_id)
    status, challenge, issued = challenges.resend(
        db,
        token,
        ttl_seconds=policy.challenge_ttl_seconds,
        max_resends=policy.challenge_max_resends,
        now=now,
    )
    log_business_event(logger, event="login.challenge_resend", request_id=request_id, result=status)
    if issued is None:
        return status, None

    delivered = notifier(challenge.email, issued.code, challenge.reason)
    return status, Verdict(
        decision=DECISION_CHALLENGE,
        reason=challenge.reason,
        challenge_token=issued.token,
        challenge_expires_at=issued.expires_at,
        code_delivered=delivered,
        undelivered_code=None if delivered else issued.code,
    )
