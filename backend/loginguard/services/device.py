import re
from dataclasses import asdict, dataclass
from datetime import datetime, timezone

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from loginguard.core.errors import TransientStoreError
from loginguard.db.models.known_device import KnownDevice
from loginguard.services.counters import normalize_email

UNKNOWN_BROWSER = "Unknown Browser"
UNKNOWN_OS = "Unknown OS"

BROWSER_PATTERNS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Firefox", ("Firefox",)),
    ("Edge", ("Edg",)),
    ("Chrome", ("Chrome",)),
    ("Safari", ("Safari",)),
    ("Opera", ("Opera", "OPR")),
)

OS_PATTERNS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Windows", ("Windows",)),
    ("macOS", ("Mac",)),
    ("Linux", ("Linux",)),
    ("Android", ("Android",)),
    ("iOS", ("iOS", "iPhone", "iPad")),
)

MOBILE_RE = re.compile(r"Mobile|Android|iPhone|iPad|iPod", re.IGNORECASE)
TABLET_MARKERS = ("iPad", "Tablet")


@dataclass(frozen=True)
class DeviceInfo:
    browser_family: str
    os_family: str
    device_class: str
    is_mobile: bool

    @property
    def fingerprint(self) -> str:
        return f"{self.browser_family}|{self.os_family}|{self.device_class}"

    def as_dict(self) -> dict:
        data = asdict(self)
        data["fingerprint"] = self.fingerprint
        return data


def _first_match(ua: str, patterns: tuple[tuple[str, tuple[str, ...]], ...], default: str) -> str:
    for family, needles in patterns:
        if any(needle in ua for needle in needles):
            return family
    return default


def extract(user_agent: str | None) -> DeviceInfo:
    ua = user_agent or ""
    is_mobile = bool(MOBILE_RE.search(ua))
    device_class = "Mobile" if is_mobile else "Desktop"
    if any(marker in ua for marker in TABLET_MARKERS):
        device_class = "Tablet"
    return DeviceInfo(
        browser_family=_first_match(ua, BROWSER_PATTERNS, UNKNOWN_BROWSER),
        os_family=_first_match(ua, OS_PATTERNS, UNKNOWN_OS),
        device_class=device_class,
        is_mobile=is_mobile,
    )


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def known_fingerprints(db: Session, email: str) -> set[str]:
    email = normalize_email(email)
    try:
        rows = db.execute(select(KnownDevice.fingerprint).where(KnownDevice.email == email)).scalars().all()
    except SQLAlchemyError as exc:
        db.rollback()
        raise TransientStoreError("devices") from exc
    return set(rows)


def is_novel_device(db: Session, email: str, info: DeviceInfo) -> bool:
    """True when the account has known devices and this one is not among them."""
    known = known_fingerprints(db, email)
    return bool(known) and info.fingerprint not in known


def remember_device(
    db: Session,
    email: str,
    info: DeviceInfo,
    *,
    limit: int,
    now: datetime | None = None,
) -> None:
    email = normalize_email(email)
    if not email:
        return
    now = now or _utc_now_naive()
    try:
        device = (
            db.execute(
                select(KnownDevice).where(KnownDevice.email == email, KnownDevice.fingerprint == info.fingerprint)
            )
            .scalars()
            .first()
        )
        if device is not None:
            device.last_seen_at = now
            db.flush()
        else:
            try:
                with db.begin_nested():
                    db.add(
                        KnownDevice(
                            email=email,
                            fingerprint=info.fingerprint,
                            browser_family=info.browser_family,
                            os_family=info.os_family,
                            device_class=info.device_class,
                            is_mobile=info.is_mobile,
                            first_seen_at=now,
                            last_seen_at=now,
                        )
                    )
            except IntegrityError:
                pass  # a concurrent login already recorded it

        keep_ids = (
            db.execute(
                select(KnownDevice.id)
                .where(KnownDevice.email == email)
                .order_by(KnownDevice.last_seen_at.desc(), KnownDevice.id.desc())
                .limit(limit)
            )
            .scalars()
            .all()
        )
        if keep_ids:
            db.execute(
                delete(KnownDevice)
                .where(KnownDevice.email == email, KnownDevice.id.not_in(keep_ids))
                .execution_options(synchronize_session=False)
            )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise TransientStoreError("devices") from exc


def list_devices(db: Session, email: str) -> list[KnownDevice]:
    return (
        db.query(KnownDevice)
        .filter(KnownDevice.email == normalize_email(email))
        .order_by(KnownDevice.last_seen_at.desc())
        .all()
    )


def forget_devices(db: Session, email: str) -> int:
    result = db.execute(
        delete(KnownDevice)
        .where(KnownDevice.email == normalize_email(email))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount


def serialize_device(device: KnownDevice) -> dict:
    return {
        "id": device.id,
        "fingerprint": device.fingerprint,
        "browser_family": device.browser_family,
        "os_family": device.os_family,
        "device_class": device.device_class,
        "is_mobile": device.is_mobile,
        "first_seen_at": device.first_seen_at.isoformat(),
        "last_seen_at": device.last_seen_at.isoformat(),
    }
