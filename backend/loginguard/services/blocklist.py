import logging
from datetime import datetime, timezone

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from loginguard.core.errors import TransientStoreError
from loginguard.db.models.block_entry import BlockEntry
from loginguard.services.counters import normalize_email

logger = logging.getLogger(__name__)

SCOPE_IP = "ip"
SCOPE_EMAIL = "email"
SCOPE_COMBINED = "combined"

ORIGIN_MANUAL = "manual"
ORIGIN_AUTO_LOCKOUT = "auto_lockout"
ORIGIN_CHALLENGE_FAILED = "challenge_failed"


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def resolve_target(ip: str | None, email: str | None) -> tuple[str, str, str | None, str | None]:
    ip = (ip or "").strip() or None
    email = normalize_email(email) or None
    if ip and email:
        return SCOPE_COMBINED, f"ip:{ip}|email:{email}", ip, email
    if ip:
        return SCOPE_IP, f"ip:{ip}", ip, None
    if email:
        return SCOPE_EMAIL, f"email:{email}", None, email
    raise ValueError("A block needs an ip, an email or both")


def _active_clause(now: datetime):
    return or_(BlockEntry.is_permanent.is_(True), BlockEntry.blocked_until > now)


def find_active_block(
    db: Session,
    *,
    ip: str | None = None,
    email: str | None = None,
    now: datetime | None = None,
) -> BlockEntry | None:
    ip = (ip or "").strip() or None
    email = normalize_email(email) or None
    if not ip and not email:
        return None
    now = now or _utc_now_naive()

    matches = []
    if ip:
        matches.append(and_(BlockEntry.scope == SCOPE_IP, BlockEntry.ip == ip))
    if email:
        matches.append(and_(BlockEntry.scope == SCOPE_EMAIL, BlockEntry.email == email))
    if ip and email:
        matches.append(
            and_(BlockEntry.scope == SCOPE_COMBINED, BlockEntry.ip == ip, BlockEntry.email == email)
        )

    stmt = (
        select(BlockEntry)
        .where(or_(*matches), _active_clause(now))
        .order_by(BlockEntry.is_permanent.desc(), BlockEntry.blocked_until.desc())
        .limit(1)
    )
    try:
        return db.execute(stmt).scalars().first()
    except SQLAlchemyError as exc:
        db.rollback()
        raise TransientStoreError("blocklist") from exc


def is_blocked(
    db: Session,
    *,
    ip: str | None = None,
    email: str | None = None,
    now: datetime | None = None,
) -> bool:
    return find_active_block(db, ip=ip, email=email, now=now) is not None


def _apply(
    entry: BlockEntry,
    *,
    reason: str | None,
    permanent: bool,
    until: datetime | None,
    origin: str,
    created_by: str | None,
    extend_only: bool,
    now: datetime,
) -> None:
    if extend_only and entry.is_active(now):
        # Automatic escalations never shorten or downgrade an existing block.
        if entry.is_permanent:
            return
        if permanent:
            entry.is_permanent = True
            entry.blocked_until = None
        elif until is not None and (entry.blocked_until is None or until > entry.blocked_until):
            entry.blocked_until = until
        entry.reason = reason or entry.reason
        entry.updated_at = now
        return

    entry.reason = reason
    entry.is_permanent = permanent
    entry.blocked_until = None if permanent else until
    entry.origin = origin
    if created_by:
        entry.created_by = created_by
    entry.updated_at = now


def block(
    db: Session,
    *,
    ip: str | None = None,
    email: str | None = None,
    reason: str | None = None,
    permanent: bool = False,
    until: datetime | None = None,
    origin: str = ORIGIN_MANUAL,
    created_by: str | None = None,
    extend_only: bool = False,
    commit: bool = True,
    now: datetime | None = None,
) -> BlockEntry:
    if not permanent and until is None:
        raise ValueError("A temporary block needs blocked_until")
    scope, target_key, ip, email = resolve_target(ip, email)
    now = now or _utc_now_naive()
    options = {
        "reason": reason,
        "permanent": permanent,
        "until": until,
        "origin": origin,
        "created_by": created_by,
        "extend_only": extend_only,
        "now": now,
    }

    try:
        entry = db.execute(select(BlockEntry).where(BlockEntry.target_key == target_key)).scalars().first()
        if entry is None:
            entry = BlockEntry(
                scope=scope,
                target_key=target_key,
                ip=ip,
                email=email,
                reason=reason,
                origin=origin,
                is_permanent=permanent,
                blocked_until=None if permanent else until,
                created_by=created_by,
                created_at=now,
                updated_at=now,
            )
            try:
                with db.begin_nested():
                    db.add(entry)
            except IntegrityError:
                entry = db.execute(select(BlockEntry).where(BlockEntry.target_key == target_key)).scalars().one()
                _apply(entry, **options)
        else:
            _apply(entry, **options)
        if commit:
            db.commit()
        else:
            db.flush()
        db.refresh(entry)
    except SQLAlchemyError as exc:
        db.rollback()
        raise TransientStoreError("blocklist") from exc

    logger.info(
        "block_list.block scope=%s target=%s origin=%s permanent=%s until=%s",
        entry.scope,
        entry.target_key,
        entry.origin,
        entry.is_permanent,
        entry.blocked_until.isoformat() if entry.blocked_until else None,
    )
    return entry


def unblock(db: Session, block_id: int) -> bool:
    try:
        result = db.execute(
            delete(BlockEntry).where(BlockEntry.id == block_id).execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise TransientStoreError("blocklist") from exc
    removed = result.rowcount > 0
    if removed:
        logger.info("block_list.unblock id=%s", block_id)
    return removed


def unblock_email(db: Session, email: str, *, origins: set[str] | None = None) -> int:
    email = normalize_email(email)
    stmt = delete(BlockEntry).where(BlockEntry.email == email)
    if origins:
        stmt = stmt.where(BlockEntry.origin.in_(sorted(origins)))
    try:
        result = db.execute(stmt.execution_options(synchronize_session=False))
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise TransientStoreError("blocklist") from exc
    return result.rowcount


def list_blocks(
    db: Session,
    *,
    active_only: bool = False,
    query: str = "",
    now: datetime | None = None,
) -> list[BlockEntry]:
    now = now or _utc_now_naive()
    q = db.query(BlockEntry)
    if active_only:
        q = q.filter(_active_clause(now))
    if query:
        needle = query.strip().lower()
        q = q.filter(or_(BlockEntry.ip.contains(needle), BlockEntry.email.contains(needle)))
    return q.order_by(BlockEntry.created_at.desc()).all()


def serialize_block(entry: BlockEntry, now: datetime | None = None) -> dict:
    now = now or _utc_now_naive()
    return {
        "id": entry.id,
        "scope": entry.scope,
        "ip": entry.ip,
        "email": entry.email,
        "reason": entry.reason,
        "origin": entry.origin,
        "is_permanent": entry.is_permanent,
        "blocked_until": entry.blocked_until.isoformat() if entry.blocked_until else None,
        "is_active": entry.is_active(now),
        "created_by": entry.created_by,
        "created_at": entry.created_at.isoformat(),
        "updated_at": entry.updated_at.isoformat(),
    }
