import logging
from datetime import datetime, timezone
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from loginguard.core.api_response import get_request_id, paged_payload, success_response_payload
from loginguard.core.export_utils import csv_attachment_response, xlsx_attachment_response
from loginguard.core.observability import log_business_event
from loginguard.core.security import Principal, require_permission
from loginguard.db.session import get_db
from loginguard.services import activity, blocklist, counters, device, geo, rate_limiter
from loginguard.services.settings import get_protection_settings, update_protection_settings

router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger(__name__)

EXPORT_LIMIT = 10000


class BlockIn(BaseModel):
    ip: str | None = Field(default=None, max_length=64)
    email: str | None = Field(default=None, max_length=320)
    reason: str | None = Field(default=None, max_length=255)
    is_permanent: bool = False
    blocked_until: datetime | None = None


class GeoRuleIn(BaseModel):
    is_blocked: bool = True
    country_name: str | None = Field(default=None, max_length=120)
    reason: str | None = Field(default=None, max_length=255)


class RateLimitSettingIn(BaseModel):
    max_requests: int
    window_seconds: int
    is_enabled: bool = True


class ProtectionSettingsIn(BaseModel):
    challenge_failure_threshold: int | None = None
    block_failure_threshold: int | None = None
    lockout_minutes: int | None = None
    failure_window_minutes: int | None = None
    challenge_ttl_seconds: int | None = None
    challenge_max_attempts: int | None = None
    challenge_max_resends: int | None = None
    challenge_block_minutes: int | None = None
    known_device_limit: int | None = None
    block_list_fail_closed: bool | None = None
    device_check_enabled: bool | None = None


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@router.get("/blocks")
def list_blocks(
    request: Request,
    active_only: bool = False,
    query: str = "",
    db: Session = Depends(get_db),
    _admin: Principal = Depends(require_permission("blocklist.manage")),
):
    rows = blocklist.list_blocks(db, active_only=active_only, query=query)
    return success_response_payload(request, data={"items": [blocklist.serialize_block(r) for r in rows]})


@router.post("/blocks")
def create_block(
    payload: BlockIn,
    request: Request,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_permission("blocklist.manage")),
):
    try:
        entry = blocklist.block(
            db,
            ip=payload.ip,
            email=payload.email,
            reason=payload.reason,
            permanent=payload.is_permanent,
            until=_naive_utc(payload.blocked_until),
            origin=blocklist.ORIGIN_MANUAL,
            created_by=admin.subject,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    log_business_event(
        logger,
        event="admin.block",
        request_id=get_request_id(request),
        actor=admin.subject,
        target=entry.target_key,
        permanent=entry.is_permanent,
    )
    return success_response_payload(request, data=blocklist.serialize_block(entry))


@router.delete("/blocks/{block_id}")
def delete_block(
    block_id: int,
    request: Request,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_permission("blocklist.manage")),
):
    removed = blocklist.unblock(db, block_id)
    log_business_event(
        logger,
        event="admin.unblock",
        request_id=get_request_id(request),
        actor=admin.subject,
        block_id=block_id,
        removed=removed,
    )
    return success_response_payload(request, data={"ok": True, "removed": removed})


@router.get("/geo-rules")
def list_geo_rules(
    request: Request,
    db: Session = Depends(get_db),
    _admin: Principal = Depends(require_permission("geo.manage")),
):
    return success_response_payload(request, data={"items": [geo.serialize_rule(r) for r in geo.list_rules(db)]})


@router.put("/geo-rules/{country_code}")
def put_geo_rule(
    country_code: str,
    payload: GeoRuleIn,
    request: Request,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_permission("geo.manage")),
):
    try:
        rule = geo.upsert_rule(
            db,
            country_code=country_code,
            is_blocked=payload.is_blocked,
            country_name=payload.country_name,
            reason=payload.reason,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    log_business_event(
        logger,
        event="admin.geo_rule",
        request_id=get_request_id(request),
        actor=admin.subject,
        country=rule.country_code,
        blocked=rule.is_blocked,
    )
    return success_response_payload(request, data=geo.serialize_rule(rule))


@router.delete("/geo-rules/{country_code}")
def delete_geo_rule(
    country_code: str,
    request: Request,
    db: Session = Depends(get_db),
    _admin: Principal = Depends(require_permission("geo.manage")),
):
    if not geo.delete_rule(db, country_code):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Geo rule not found")
    return success_response_payload(request, data={"ok": True})


@router.get("/rate-limits")
def list_rate_limits(
    request: Request,
    db: Session = Depends(get_db),
    _admin: Principal = Depends(require_permission("rate_limits.manage")),
):
    items = [rate_limiter.serialize_setting(s) for s in rate_limiter.list_settings(db)]
    return success_response_payload(request, data={"items": items})


@router.put("/rate-limits/{endpoint}")
def put_rate_limit(
    endpoint: str,
    payload: RateLimitSettingIn,
    request: Request,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_permission("rate_limits.manage")),
):
    try:
        setting = rate_limiter.upsert_setting(
            db,
            endpoint=endpoint,
            max_requests=payload.max_requests,
            window_seconds=payload.window_seconds,
            is_enabled=payload.is_enabled,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    log_business_event(
        logger,
        event="admin.rate_limit",
        request_id=get_request_id(request),
        actor=admin.subject,
        endpoint=setting.endpoint,
        max_requests=setting.max_requests,
        window_seconds=setting.window_seconds,
        enabled=setting.is_enabled,
    )
    return success_response_payload(request, data=rate_limiter.serialize_setting(setting))


@router.get("/rate-limits/windows")
def list_rate_windows(
    request: Request,
    ip: str = "",
    db: Session = Depends(get_db),
    _admin: Principal = Depends(require_permission("rate_limits.manage")),
):
    items = [rate_limiter.serialize_window(w) for w in rate_limiter.list_windows(db, ip=ip)]
    return success_response_payload(request, data={"items": items})


@router.get("/settings")
def get_settings(
    request: Request,
    db: Session = Depends(get_db),
    _admin: Principal = Depends(require_permission("settings.manage")),
):
    return success_response_payload(request, data=get_protection_settings(db).as_dict())


@router.post("/settings")
def post_settings(
    payload: ProtectionSettingsIn,
    request: Request,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_permission("settings.manage")),
):
    changes = payload.model_dump(exclude_none=True)
    try:
        updated = update_protection_settings(db, **changes)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    log_business_event(
        logger,
        event="admin.settings.update",
        request_id=get_request_id(request),
        actor=admin.subject,
        fields=",".join(sorted(changes)) or "-",
    )
    return success_response_payload(request, data=updated.as_dict())


@router.get("/lockouts")
def list_lockouts(
    request: Request,
    email: str = "",
    db: Session = Depends(get_db),
    _admin: Principal = Depends(require_permission("lockouts.manage")),
):
    failures = [
        {
            "email": row.email,
            "attempt_count": row.attempt_count,
            "last_attempt_at": row.last_attempt_at.isoformat(),
            "last_ip": row.last_ip,
        }
        for row in counters.list_failures(db, email=email)
    ]
    locks = [
        blocklist.serialize_block(entry)
        for entry in blocklist.list_blocks(db, active_only=True, query=email)
        if entry.origin in {blocklist.ORIGIN_AUTO_LOCKOUT, blocklist.ORIGIN_CHALLENGE_FAILED}
    ]
    return success_response_payload(request, data={"failures": failures, "lockouts": locks})


@router.post("/lockouts/{email}/unlock")
def unlock_account(
    email: str,
    request: Request,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_permission("lockouts.manage")),
):
    cleared = counters.clear_failures(db, email)
    removed = blocklist.unblock_email(
        db,
        email,
        origins={blocklist.ORIGIN_AUTO_LOCKOUT, blocklist.ORIGIN_CHALLENGE_FAILED},
    )
    log_business_event(
        logger,
        event="admin.unlock",
        request_id=get_request_id(request),
        actor=admin.subject,
        email=counters.normalize_email(email),
        blocks_removed=removed,
    )
    return success_response_payload(request, data={"ok": True, "failures_cleared": cleared, "blocks_removed": removed})


@router.get("/devices/{email}")
def list_known_devices(
    email: str,
    request: Request,
    db: Session = Depends(get_db),
    _admin: Principal = Depends(require_permission("lockouts.manage")),
):
    items = [device.serialize_device(d) for d in device.list_devices(db, email)]
    return success_response_payload(request, data={"items": items})


@router.delete("/devices/{email}")
def forget_known_devices(
    email: str,
    request: Request,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_permission("lockouts.manage")),
):
    removed = device.forget_devices(db, email)
    log_business_event(
        logger,
        event="admin.devices.forget",
        request_id=get_request_id(request),
        actor=admin.subject,
        email=counters.normalize_email(email),
        removed=removed,
    )
    return success_response_payload(request, data={"ok": True, "removed": removed})


def _activity_query_or_400(db: Session, **filters):
    try:
        return activity.activity_query(db, **filters)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.get("/login-activity")
def list_login_activity(
    request: Request,
    email: str = "",
    user_id: str = "",
    ip: str = "",
    status_filter: str = "",
    source: str = "",
    date_from: str = "",
    date_to: str = "",
    sort_dir: Literal["desc", "asc"] = "desc",
    page: int = 1,
    page_size: int = 50,
    db: Session = Depends(get_db),
    _admin: Principal = Depends(require_permission("activity.view")),
):
    safe_page = max(1, page)
    safe_page_size = max(1, min(page_size, 200))
    query = _activity_query_or_400(
        db,
        email=email,
        user_id=user_id,
        ip=ip,
        status=status_filter,
        source=source,
        date_from=date_from,
        date_to=date_to,
        sort_dir=sort_dir,
    )
    total = query.count()
    rows = query.offset((safe_page - 1) * safe_page_size).limit(safe_page_size).all()
    return success_response_payload(
        request,
        data=paged_payload(
            items=[activity.serialize_activity(r) for r in rows],
            total=total,
            page=safe_page,
            page_size=safe_page_size,
        ),
    )


@router.get("/login-activity/export.csv")
def export_login_activity_csv(
    email: str = "",
    status_filter: str = "",
    date_from: str = "",
    date_to: str = "",
    db: Session = Depends(get_db),
    _admin: Principal = Depends(require_permission("activity.view")),
):
    query = _activity_query_or_400(db, email=email, status=status_filter, date_from=date_from, date_to=date_to)
    rows = query.limit(EXPORT_LIMIT).all()
    return csv_attachment_response(
        filename="login_activity.csv",
        header=activity.EXPORT_HEADER,
        rows=(activity.export_row(r) for r in rows),
    )


@router.get("/login-activity/export.xlsx")
def export_login_activity_xlsx(
    email: str = "",
    status_filter: str = "",
    date_from: str = "",
    date_to: str = "",
    db: Session = Depends(get_db),
    _admin: Principal = Depends(require_permission("activity.view")),
):
    query = _activity_query_or_400(db, email=email, status=status_filter, date_from=date_from, date_to=date_to)
    rows = query.limit(EXPORT_LIMIT).all()
    return xlsx_attachment_response(
        filename="login_activity.xlsx",
        sheet_name="LoginActivity",
        header=activity.EXPORT_HEADER,
        rows=(activity.export_row(r) for r in rows),
    )
