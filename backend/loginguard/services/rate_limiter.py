import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from loginguard.core.errors import TransientStoreError
from loginguard.db.models.rate_limit import WILDCARD_ENDPOINT, RateLimitSetting, RateWindow

logger = logging.getLogger(__name__)

_WRITE_RETRIES = 3


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: int | None = None
    reset_at: datetime | None = None
    limit: int | None = None

    def retry_after(self, now: datetime | None = None) -> int | None:
        if self.allowed or self.reset_at is None:
            return None
        now = now or _utc_now_naive()
        return max(1, int((self.reset_at - now).total_seconds()))


UNLIMITED = RateDecision(allowed=True)


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _normalize_endpoint(endpoint: str | None) -> str:
    return (endpoint or "").strip().lower() or WILDCARD_ENDPOINT


def resolve_setting(db: Session, endpoint: str | None) -> RateLimitSetting | None:
    endpoint = _normalize_endpoint(endpoint)
    rows = (
        db.execute(
            select(RateLimitSetting).where(RateLimitSetting.endpoint.in_([endpoint, WILDCARD_ENDPOINT]))
        )
        .scalars()
        .all()
    )
    by_endpoint = {row.endpoint: row for row in rows}
    return by_endpoint.get(endpoint) or by_endpoint.get(WILDCARD_ENDPOINT)


def _live_count(row: RateWindow | None, window_seconds: int, now: datetime) -> tuple[int, datetime]:
    if row is None or now - row.window_start >= timedelta(seconds=window_seconds):
        return 0, now
    return row.request_count, row.window_start


def check(db: Session, ip: str, endpoint: str | None, *, now: datetime | None = None) -> RateDecision:
    now = now or _utc_now_naive()
    endpoint = _normalize_endpoint(endpoint)
    try:
        setting = resolve_setting(db, endpoint)
        if setting is None or not setting.is_enabled:
            return UNLIMITED
        row = (
            db.execute(select(RateWindow).where(RateWindow.ip == ip, RateWindow.endpoint == endpoint))
            .scalars()
            .first()
        )
    except SQLAlchemyError as exc:
        db.rollback()
        raise TransientStoreError("rate_limiter") from exc

    count, window_start = _live_count(row, setting.window_seconds, now)
    return RateDecision(
        allowed=count < setting.max_requests,
        remaining=max(0, setting.max_requests - count - 1),
        reset_at=window_start + timedelta(seconds=setting.window_seconds),
        limit=setting.max_requests,
    )


def _increment(
    db: Session,
    ip: str,
    endpoint: str,
    *,
    window_seconds: int,
    now: datetime,
    max_requests: int | None,
) -> bool:
    """Bump the live window, restarting it if elapsed. Returns False when capped."""
    window_floor = now - timedelta(seconds=window_seconds)

    live = (
        update(RateWindow)
        .where(
            RateWindow.ip == ip,
            RateWindow.endpoint == endpoint,
            RateWindow.window_start > window_floor,
        )
        .values(request_count=RateWindow.request_count + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if max_requests is not None:
        live = live.where(RateWindow.request_count < max_requests)

    for _ in range(_WRITE_RETRIES):
        if db.execute(live).rowcount:
            return True

        restarted = db.execute(
            update(RateWindow)
            .where(
                RateWindow.ip == ip,
                RateWindow.endpoint == endpoint,
                RateWindow.window_start <= window_floor,
            )
            .values(request_count=1, window_start=now, updated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        if restarted:
            return True

        exists = db.execute(
            select(RateWindow.id).where(RateWindow.ip == ip, RateWindow.endpoint == endpoint)
        ).first()
        if exists is not None:
            # Live window already at the cap.
            return False

        try:
            with db.begin_nested():
                db.add(RateWindow(ip=ip, endpoint=endpoint, request_count=1, window_start=now, updated_at=now))
            return True
        except IntegrityError:
            continue
    raise TransientStoreError("rate_limiter", "could not upsert rate window")


def record(db: Session, ip: str, endpoint: str | None, *, now: datetime | None = None) -> None:
    now = now or _utc_now_naive()
    endpoint = _normalize_endpoint(endpoint)
    try:
        setting = resolve_setting(db, endpoint)
        window_seconds = setting.window_seconds if setting else 60
        _increment(db, ip, endpoint, window_seconds=window_seconds, now=now, max_requests=None)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise TransientStoreError("rate_limiter") from exc


def consume(db: Session, ip: str, endpoint: str | None, *, now: datetime | None = None) -> RateDecision:
    """Atomically admit and count one request if the window has room."""
    now = now or _utc_now_naive()
    endpoint = _normalize_endpoint(endpoint)
    try:
        setting = resolve_setting(db, endpoint)
        if setting is None or not setting.is_enabled:
            return UNLIMITED
        admitted = _increment(
            db,
            ip,
            endpoint,
            window_seconds=setting.window_seconds,
            now=now,
            max_requests=setting.max_requests,
        )
        db.commit()
        row = (
            db.execute(select(RateWindow).where(RateWindow.ip == ip, RateWindow.endpoint == endpoint))
            .scalars()
            .one()
        )
    except SQLAlchemyError as exc:
        db.rollback()
        raise TransientStoreError("rate_limiter") from exc

    reset_at = row.window_start + timedelta(seconds=setting.window_seconds)
    if not admitted:
        logger.info("rate_limit.exceeded ip=%s endpoint=%s limit=%s", ip, endpoint, setting.max_requests)
        return RateDecision(allowed=False, remaining=0, reset_at=reset_at, limit=setting.max_requests)
    return RateDecision(
        allowed=True,
        remaining=max(0, setting.max_requests - row.request_count),
        reset_at=reset_at,
        limit=setting.max_requests,
    )


def list_settings(db: Session) -> list[RateLimitSetting]:
    return db.query(RateLimitSetting).order_by(RateLimitSetting.endpoint.asc()).all()


def upsert_setting(
    db: Session,
    *,
    endpoint: str | None,
    max_requests: int,
    window_seconds: int,
    is_enabled: bool = True,
) -> RateLimitSetting:
    if max_requests < 1 or window_seconds < 1:
        raise ValueError("max_requests and window_seconds must be positive")
    endpoint = _normalize_endpoint(endpoint)
    now = _utc_now_naive()
    setting = db.query(RateLimitSetting).filter(RateLimitSetting.endpoint == endpoint).first()
    if setting is None:
        setting = RateLimitSetting(endpoint=endpoint, created_at=now)
        db.add(setting)
    setting.max_requests = max_requests
    setting.window_seconds = window_seconds
    setting.is_enabled = is_enabled
    setting.updated_at = now
    db.commit()
    db.refresh(setting)
    return setting


def list_windows(db: Session, *, ip: str = "", limit: int = 100) -> list[RateWindow]:
    query = db.query(RateWindow)
    if ip:
        query = query.filter(RateWindow.ip == ip.strip())
    return query.order_by(RateWindow.updated_at.desc()).limit(limit).all()


def serialize_setting(setting: RateLimitSetting) -> dict:
    return {
        "id": setting.id,
        "endpoint": setting.endpoint,
        "max_requests": setting.max_requests,
        "window_seconds": setting.window_seconds,
        "is_enabled": setting.is_enabled,
        "updated_at": setting.updated_at.isoformat(),
    }


def serialize_window(window: RateWindow) -> dict:
    return {
        "id": window.id,
        "ip": window.ip,
        "endpoint": window.endpoint,
        "request_count": window.request_count,
        "window_start": window.window_start.isoformat(),
    }
