from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from loginguard.core.errors import TransientStoreError
from loginguard.db.models.geo_rule import GeoRule


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_country_code(code: str | None) -> str:
    return (code or "").strip().upper()


def is_country_blocked(db: Session, country_code: str | None) -> bool:
    code = normalize_country_code(country_code)
    if not code:
        return False
    try:
        blocked = db.execute(select(GeoRule.is_blocked).where(GeoRule.country_code == code)).scalar_one_or_none()
    except SQLAlchemyError as exc:
        db.rollback()
        raise TransientStoreError("geo") from exc
    return bool(blocked)


def list_rules(db: Session) -> list[GeoRule]:
    return db.query(GeoRule).order_by(GeoRule.country_code.asc()).all()


def upsert_rule(
    db: Session,
    *,
    country_code: str,
    is_blocked: bool,
    country_name: str | None = None,
    reason: str | None = None,
) -> GeoRule:
    code = normalize_country_code(country_code)
    if len(code) != 2 or not code.isalpha():
        raise ValueError("country_code must be a two-letter ISO code")

    now = _utc_now_naive()
    rule = db.query(GeoRule).filter(GeoRule.country_code == code).first()
    if rule is None:
        rule = GeoRule(country_code=code, created_at=now)
        db.add(rule)
    rule.is_blocked = is_blocked
    rule.country_name = country_name or rule.country_name
    rule.reason = reason
    rule.updated_at = now
    db.commit()
    db.refresh(rule)
    return rule


def delete_rule(db: Session, country_code: str) -> bool:
    rule = db.query(GeoRule).filter(GeoRule.country_code == normalize_country_code(country_code)).first()
    if rule is None:
        return False
    db.delete(rule)
    db.commit()
    return True


def serialize_rule(rule: GeoRule) -> dict:
    return {
        "id": rule.id,
        "country_code": rule.country_code,
        "country_name": rule.country_name,
        "is_blocked": rule.is_blocked,
        "reason": rule.reason,
        "updated_at": rule.updated_at.isoformat(),
    }
