from datetime import datetime, timezone
from typing import Literal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session

from loginguard.core.errors import TransientStoreError
from loginguard.db.models.login_activity import LoginActivity
from loginguard.services.counters import normalize_email

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_BLOCKED = "blocked"
STATUS_CHALLENGED = "challenged"

SOURCE_LOGIN = "login"
SOURCE_FAILURE = "failure"
SOURCE_CHALLENGE = "challenge"

EXPORT_HEADER = [
    "id",
    "created_at",
    "email",
    "user_id",
    "status",
    "failure_reason",
    "source",
    "ip",
    "country_code",
    "device",
    "user_agent",
]


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def write_activity(
    db: Session,
    *,
    status: str,
    source: str,
    email: str | None = None,
    user_id: str | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
    device_info: dict | None = None,
    country_code: str | None = None,
    failure_reason: str | None = None,
    request_id: str | None = None,
    now: datetime | None = None,
) -> LoginActivity:
    row = LoginActivity(
        user_id=user_id,
        email=normalize_email(email) or None,
        ip=ip,
        user_agent=(user_agent or "")[:255] or None,
        device_info=device_info,
        location={"country_code": country_code} if country_code else None,
        status=status,
        failure_reason=failure_reason,
        source=source,
        request_id=request_id,
        created_at=now or _utc_now_naive(),
    )
    try:
        db.add(row)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise TransientStoreError("activity") from exc
    return row


def _parse_date(raw: str) -> datetime | None:
    raw = raw.strip()
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid date: {raw}") from exc


def activity_query(
    db: Session,
    *,
    email: str = "",
    user_id: str = "",
    ip: str = "",
    status: str = "",
    source: str = "",
    date_from: str = "",
    date_to: str = "",
    sort_dir: Literal["desc", "asc"] = "desc",
) -> Query:
    query = db.query(LoginActivity)
    if email:
        query = query.filter(LoginActivity.email.contains(normalize_email(email)))
    if user_id:
        query = query.filter(LoginActivity.user_id == user_id)
    if ip:
        query = query.filter(LoginActivity.ip == ip.strip())
    if status:
        query = query.filter(LoginActivity.status == status)
    if source:
        query = query.filter(LoginActivity.source == source)
    start = _parse_date(date_from)
    if start is not None:
        query = query.filter(LoginActivity.created_at >= start)
    end = _parse_date(date_to)
    if end is not None:
        query = query.filter(LoginActivity.created_at <= end)
    order = LoginActivity.created_at.asc() if sort_dir == "asc" else LoginActivity.created_at.desc()
    return query.order_by(order, LoginActivity.id.desc())


def serialize_activity(row: LoginActivity) -> dict:
    return {
        "id": row.id,
        "created_at": row.created_at.isoformat(),
        "user_id": row.user_id,
        "email": row.email,
        "ip": row.ip,
        "user_agent": row.user_agent,
        "device_info": row.device_info,
        "location": row.location,
        "status": row.status,
        "failure_reason": row.failure_reason,
        "source": row.source,
    }


def export_row(row: LoginActivity) -> list:
    device = (row.device_info or {}).get("fingerprint")
    country = (row.location or {}).get("country_code")
    return [
        row.id,
        row.created_at.isoformat(),
        row.email,
        row.user_id,
        row.status,
        row.failure_reason,
        row.source,
        row.ip,
        country,
        device,
        row.user_agent,
    ]
