import os
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from loginguard.core.api_response import get_request_id, success_response_payload
from loginguard.core.errors import ChallengeExpired, PolicyBlock, RetryExhausted, TransientStoreError
from loginguard.core.notifications import send_verification_code_email
from loginguard.core.permissions import has_permission
from loginguard.core.security import Principal, get_current_principal
from loginguard.db.session import get_db
from loginguard.services import challenges, engine, rate_limiter, recovery_codes
from loginguard.services.engine import LoginAttempt
from loginguard.services.settings import CHALLENGE_VERIFY_ENDPOINT

router = APIRouter(prefix="/login", tags=["login"])
logger = logging.getLogger(__name__)


def _dev_show_code() -> bool:
    return os.getenv("AUTH_DEV_SHOW_CODE", "false").lower() == "true"


class AttemptIn(BaseModel):
    email: str | None = Field(default=None, max_length=320)
    user_id: str | None = Field(default=None, max_length=64)
    ip: str | None = Field(default=None, max_length=64)
    user_agent: str | None = None
    country_code: str | None = Field(default=None, max_length=2)


class FailureIn(AttemptIn):
    email: str = Field(max_length=320)
    reason: str = Field(default=engine.REASON_INVALID_CREDENTIALS, max_length=64)


class ChallengeVerifyIn(BaseModel):
    token: str
    proof: str = Field(max_length=64)


class ChallengeResendIn(BaseModel):
    token: str


class RecoveryCodesIn(BaseModel):
    user_id: str = Field(max_length=64)
    count: int = recovery_codes.RECOVERY_CODE_BATCH_SIZE


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()[:64]
    if request.client and request.client.host:
        return request.client.host[:64]
    return None


def _attempt_from(payload: AttemptIn, request: Request) -> LoginAttempt:
    country = payload.country_code or request.headers.get("cf-ipcountry") or None
    return LoginAttempt(
        ip=payload.ip or _client_ip(request),
        email=payload.email,
        user_agent=payload.user_agent or request.headers.get("user-agent"),
        country_code=country.upper() if country else None,
        user_id=payload.user_id,
        request_id=get_request_id(request),
    )


def _verdict_payload(verdict: engine.Verdict) -> dict:
    data = {
        "decision": verdict.decision,
        "reason": verdict.reason,
        "retry_after": verdict.retry_after,
        "challenge_token": verdict.challenge_token,
        "challenge_expires_at": verdict.challenge_expires_at.isoformat() if verdict.challenge_expires_at else None,
    }
    if verdict.decision == engine.DECISION_CHALLENGE:
        data["code_delivered"] = bool(verdict.code_delivered)
        if verdict.undelivered_code and _dev_show_code():
            data["dev_code"] = verdict.undelivered_code
    return data


@router.post("/evaluate")
def evaluate_login(payload: AttemptIn, request: Request, db: Session = Depends(get_db)):
    verdict = engine.evaluate(db, _attempt_from(payload, request), notifier=send_verification_code_email)
    if verdict.decision == engine.DECISION_BLOCK:
        raise PolicyBlock(verdict.reason, retry_after=verdict.retry_after)
    return success_response_payload(request, data=_verdict_payload(verdict))


@router.post("/failure")
def report_failure(payload: FailureIn, request: Request, db: Session = Depends(get_db)):
    try:
        outcome = engine.record_failed_login(db, _attempt_from(payload, request), reason=payload.reason)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return success_response_payload(
        request,
        data={"attempt_count": outcome.attempt_count, "locked": outcome.locked, "alert_sent": outcome.alert_sent},
    )


@router.post("/challenge/verify")
def verify_challenge(payload: ChallengeVerifyIn, request: Request, db: Session = Depends(get_db)):
    ip = _client_ip(request)
    user_agent = request.headers.get("user-agent")
    if ip:
        try:
            rate = rate_limiter.consume(db, ip, CHALLENGE_VERIFY_ENDPOINT)
        except TransientStoreError:
            logger.warning("Challenge rate limit unavailable ip=%s", ip, exc_info=True)
        else:
            if not rate.allowed:
                engine.record_challenge_rate_limited(
                    db,
                    ip=ip,
                    user_agent=user_agent,
                    request_id=get_request_id(request),
                )
                raise PolicyBlock(engine.REASON_RATE_LIMITED, retry_after=rate.retry_after())

    result = engine.complete_challenge(
        db,
        payload.token,
        payload.proof,
        ip=ip,
        user_agent=user_agent,
        request_id=get_request_id(request),
    )
    if result.status == challenges.RESULT_VERIFIED:
        challenge = result.challenge
        return success_response_payload(
            request,
            data={
                "verified": True,
                "email": challenge.email,
                "user_id": challenge.user_id,
                "proof_type": result.proof_type,
            },
        )
    if result.status == challenges.RESULT_EXPIRED:
        raise ChallengeExpired("Verification expired, please retry login")
    if result.status == challenges.RESULT_FAILED:
        raise RetryExhausted("Too many invalid codes, sign-in is temporarily blocked")
    if result.status == challenges.RESULT_INVALID:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "Invalid code", "attempts_remaining": result.attempts_remaining},
        )
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid or already used challenge")


@router.post("/challenge/resend")
def resend_challenge(payload: ChallengeResendIn, request: Request, db: Session = Depends(get_db)):
    result, verdict = engine.resend_challenge(
        db,
        payload.token,
        notifier=send_verification_code_email,
        request_id=get_request_id(request),
    )
    if result == challenges.RESULT_EXPIRED:
        raise ChallengeExpired("Verification expired, please retry login")
    if result == challenges.RESEND_LIMIT_REACHED:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Resend limit reached")
    if verdict is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid or already used challenge")
    return success_response_payload(request, data=_verdict_payload(verdict))


def _require_code_owner(principal: Principal, user_id: str) -> None:
    if principal.subject == user_id or has_permission(principal.role, "lockouts.manage"):
        return
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to manage these recovery codes")


@router.post("/recovery-codes")
def generate_recovery_codes(
    payload: RecoveryCodesIn,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    _require_code_owner(principal, payload.user_id)
    try:
        codes = recovery_codes.generate_codes(db, payload.user_id, count=payload.count)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return success_response_payload(request, data={"user_id": payload.user_id, "codes": codes})


@router.get("/recovery-codes/{user_id}")
def recovery_codes_status(
    user_id: str,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    _require_code_owner(principal, user_id)
    return success_response_payload(
        request,
        data={"user_id": user_id, "remaining": recovery_codes.remaining_codes(db, user_id)},
    )
