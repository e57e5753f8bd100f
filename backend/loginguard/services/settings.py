import os
import logging
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from loginguard.core.errors import TransientStoreError
from loginguard.db.models.protection_settings import ProtectionSettings
from loginguard.db.models.rate_limit import WILDCARD_ENDPOINT, RateLimitSetting

logger = logging.getLogger(__name__)

SETTINGS_ROW_ID = 1

LOGIN_ENDPOINT = "login"
CHALLENGE_VERIFY_ENDPOINT = "challenge_verify"

DEFAULT_RATE_LIMITS: dict[str, tuple[int, int]] = {
    WILDCARD_ENDPOINT: (60, 60),
    LOGIN_ENDPOINT: (10, 60),
    CHALLENGE_VERIFY_ENDPOINT: (10, 300),
}


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)).strip())
    except ValueError:
        logger.warning("Ignoring non-integer %s, using %s", name, default)
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class PolicySettings:
    challenge_failure_threshold: int
    block_failure_threshold: int
    lockout_minutes: int
    failure_window_minutes: int
    challenge_ttl_seconds: int
    challenge_max_attempts: int
    challenge_max_resends: int
    challenge_block_minutes: int
    known_device_limit: int
    block_list_fail_closed: bool
    device_check_enabled: bool

    def as_dict(self) -> dict:
        return asdict(self)


def default_policy_settings() -> PolicySettings:
    return PolicySettings(
        challenge_failure_threshold=_env_int("LOGIN_CHALLENGE_FAILURE_THRESHOLD", 5),
        block_failure_threshold=_env_int("LOGIN_BLOCK_FAILURE_THRESHOLD", 10),
        lockout_minutes=_env_int("LOGIN_LOCKOUT_MINUTES", 30),
        failure_window_minutes=_env_int("LOGIN_FAILURE_WINDOW_MINUTES", 60),
        challenge_ttl_seconds=_env_int("CHALLENGE_TTL_SECONDS", 600),
        challenge_max_attempts=_env_int("CHALLENGE_MAX_ATTEMPTS", 5),
        challenge_max_resends=_env_int("CHALLENGE_MAX_RESENDS", 3),
        challenge_block_minutes=_env_int("CHALLENGE_BLOCK_MINUTES", 60),
        known_device_limit=_env_int("KNOWN_DEVICE_LIMIT", 5),
        block_list_fail_closed=_env_bool("BLOCK_LIST_FAIL_CLOSED", False),
        device_check_enabled=_env_bool("DEVICE_CHECK_ENABLED", True),
    )


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _to_policy(row: ProtectionSettings) -> PolicySettings:
    return PolicySettings(**{f.name: getattr(row, f.name) for f in fields(PolicySettings)})


def _validate(settings: PolicySettings) -> None:
    for f in fields(PolicySettings):
        value = getattr(settings, f.name)
        if isinstance(value, bool):
            continue
        if value < 1:
            raise ValueError(f"{f.name} must be a positive integer")
    if settings.block_failure_threshold < settings.challenge_failure_threshold:
        raise ValueError("block_failure_threshold must not be lower than challenge_failure_threshold")


def _ensure_row(db: Session) -> ProtectionSettings:
    row = db.get(ProtectionSettings, SETTINGS_ROW_ID)
    if row is not None:
        return row
    defaults = default_policy_settings()
    row = ProtectionSettings(id=SETTINGS_ROW_ID, updated_at=_utc_now_naive(), **defaults.as_dict())
    try:
        with db.begin_nested():
            db.add(row)
        db.commit()
    except IntegrityError:
        # Another worker seeded it first.
        db.rollback()
        row = db.get(ProtectionSettings, SETTINGS_ROW_ID)
    return row


def get_protection_settings(db: Session) -> PolicySettings:
    try:
        return _to_policy(_ensure_row(db))
    except SQLAlchemyError as exc:
        db.rollback()
        raise TransientStoreError("settings") from exc


def update_protection_settings(db: Session, **changes) -> PolicySettings:
    known = {f.name for f in fields(PolicySettings)}
    unknown = set(changes) - known
    if unknown:
        raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")

    row = _ensure_row(db)
    merged = _to_policy(row).as_dict()
    merged.update({k: v for k, v in changes.items() if v is not None})
    candidate = PolicySettings(**merged)
    _validate(candidate)

    for key, value in candidate.as_dict().items():
        setattr(row, key, value)
    row.updated_at = _utc_now_naive()
    db.commit()
    return candidate


def seed_default_rate_limits(db: Session) -> int:
    existing = {s.endpoint for s in db.query(RateLimitSetting).all()}
    now = _utc_now_naive()
    created = 0
    for endpoint, (max_requests, window_seconds) in DEFAULT_RATE_LIMITS.items():
        if endpoint in existing:
            continue
        db.add(
            RateLimitSetting(
                endpoint=endpoint,
                max_requests=max_requests,
                window_seconds=window_seconds,
                is_enabled=True,
                created_at=now,
                updated_at=now,
            )
        )
        created += 1
    if created:
        db.commit()
    return created
