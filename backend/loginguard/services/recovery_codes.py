import os
import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from loginguard.core.errors import TransientStoreError
from loginguard.core.security import generate_recovery_code, hash_secret, normalize_recovery_code
from loginguard.db.models.recovery_code import RecoveryCode

logger = logging.getLogger(__name__)

RECOVERY_CODE_BATCH_SIZE = int(os.getenv("RECOVERY_CODE_BATCH_SIZE", "10"))


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_codes(
    db: Session,
    user_id: str,
    *,
    count: int = RECOVERY_CODE_BATCH_SIZE,
    now: datetime | None = None,
) -> list[str]:
    if not user_id:
        raise ValueError("user_id is required")
    if count < 1 or count > 50:
        raise ValueError("count must be between 1 and 50")
    now = now or _utc_now_naive()
    batch_id = uuid.uuid4().hex

    codes: list[str] = []
    seen: set[str] = set()
    while len(codes) < count:
        code = generate_recovery_code()
        if code in seen:
            continue
        seen.add(code)
        codes.append(code)

    try:
        db.execute(
            delete(RecoveryCode).where(RecoveryCode.user_id == user_id).execution_options(synchronize_session=False)
        )
        db.add_all(
            [
                RecoveryCode(
                    user_id=user_id,
                    code_hash=hash_secret(code),
                    batch_id=batch_id,
                    is_used=False,
                    used_at=None,
                    created_at=now,
                )
                for code in codes
            ]
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise TransientStoreError("recovery_codes") from exc

    logger.info("recovery_codes.generated user_id=%s count=%s batch=%s", user_id, count, batch_id)
    return codes


def consume_code(db: Session, user_id: str, code: str, *, now: datetime | None = None) -> bool:
    """Mark a matching unused code as used. Does not commit."""
    normalized = normalize_recovery_code(code)
    if not user_id or not normalized:
        return False
    result = db.execute(
        update(RecoveryCode)
        .where(
            RecoveryCode.user_id == user_id,
            RecoveryCode.code_hash == hash_secret(normalized),
            RecoveryCode.is_used.is_(False),
        )
        .values(is_used=True, used_at=now or _utc_now_naive())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def remaining_codes(db: Session, user_id: str) -> int:
    return int(
        db.execute(
            select(func.count(RecoveryCode.id)).where(
                RecoveryCode.user_id == user_id,
                RecoveryCode.is_used.is_(False),
            )
        ).scalar_one()
    )
