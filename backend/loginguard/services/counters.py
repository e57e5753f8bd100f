import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import case, delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from loginguard.core.errors import TransientStoreError
from loginguard.db.models.failed_login_counter import FailedLoginCounter

logger = logging.getLogger(__name__)

_INSERT_RETRIES = 3


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def _atomic_increment(
    db: Session,
    email: str,
    *,
    cutoff: datetime,
    now: datetime,
    ip: str | None,
    user_agent: str | None,
) -> bool:
    stmt = (
        update(FailedLoginCounter)
        .where(FailedLoginCounter.email == email)
        .values(
            attempt_count=case(
                (FailedLoginCounter.last_attempt_at < cutoff, 1),
                else_=FailedLoginCounter.attempt_count + 1,
            ),
            last_attempt_at=now,
            last_ip=ip,
            last_user_agent=user_agent,
        )
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount > 0


def increment_failure(
    db: Session,
    email: str,
    *,
    window_minutes: int,
    ip: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> int:
    email = normalize_email(email)
    now = now or _utc_now_naive()
    cutoff = now - timedelta(minutes=window_minutes)
    user_agent = (user_agent or "")[:255] or None

    try:
        for _ in range(_INSERT_RETRIES):
            if _atomic_increment(db, email, cutoff=cutoff, now=now, ip=ip, user_agent=user_agent):
                break
            try:
                with db.begin_nested():
                    db.add(
                        FailedLoginCounter(
                            email=email,
                            attempt_count=1,
                            last_attempt_at=now,
                            last_ip=ip,
                            last_user_agent=user_agent,
                            created_at=now,
                        )
                    )
                break
            except IntegrityError:
                # Lost the insert race; the row exists now, so update it.
                continue
        else:
            db.rollback()
            raise TransientStoreError("counters", "could not upsert failure counter")
        db.commit()
        count = db.execute(
            select(FailedLoginCounter.attempt_count).where(FailedLoginCounter.email == email)
        ).scalar_one()
    except SQLAlchemyError as exc:
        db.rollback()
        raise TransientStoreError("counters") from exc
    return int(count)


def get_failure_count(
    db: Session,
    email: str,
    *,
    window_minutes: int,
    now: datetime | None = None,
) -> int:
    email = normalize_email(email)
    if not email:
        return 0
    now = now or _utc_now_naive()
    try:
        row = db.execute(
            select(FailedLoginCounter.attempt_count, FailedLoginCounter.last_attempt_at).where(
                FailedLoginCounter.email == email
            )
        ).first()
    except SQLAlchemyError as exc:
        db.rollback()
        raise TransientStoreError("counters") from exc
    if row is None:
        return 0
    count, last_attempt_at = row
    if last_attempt_at < now - timedelta(minutes=window_minutes):
        return 0
    return int(count)


def clear_failures(db: Session, email: str) -> bool:
    email = normalize_email(email)
    try:
        result = db.execute(
            delete(FailedLoginCounter)
            .where(FailedLoginCounter.email == email)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise TransientStoreError("counters") from exc
    return result.rowcount > 0


def list_failures(db: Session, *, email: str = "", limit: int = 100) -> list[FailedLoginCounter]:
    query = db.query(FailedLoginCounter)
    if email:
        query = query.filter(FailedLoginCounter.email.contains(normalize_email(email)))
    return query.order_by(FailedLoginCounter.last_attempt_at.desc()).limit(limit).all()
