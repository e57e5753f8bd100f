from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer
from sqlalchemy.orm import Mapped, mapped_column

from loginguard.db.base import Base


class ProtectionSettings(Base):
    __tablename__ = "protection_settings"

    id: Mapped[int] = mapped_column(primary_key=True)
    challenge_failure_threshold: Mapped[int] = mapped_column(Integer)
    block_failure_threshold: Mapped[int] = mapped_column(Integer)
    lockout_minutes: Mapped[int] = mapped_column(Integer)
    failure_window_minutes: Mapped[int] = mapped_column(Integer)
    challenge_ttl_seconds: Mapped[int] = mapped_column(Integer)
    challenge_max_attempts: Mapped[int] = mapped_column(Integer)
    challenge_max_resends: Mapped[int] = mapped_column(Integer)
    challenge_block_minutes: Mapped[int] = mapped_column(Integer)
    known_device_limit: Mapped[int] = mapped_column(Integer)
    block_list_fail_closed: Mapped[bool] = mapped_column(Boolean, default=False)
    device_check_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime)
