from datetime import datetime

from sqlalchemy import Boolean, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from loginguard.db.base import Base


class BlockEntry(Base):
    __tablename__ = "block_entries"

    id: Mapped[int] = mapped_column(primary_key=True)
    # "ip" | "email" | "combined"
    scope: Mapped[str] = mapped_column(String(16), index=True)
    target_key: Mapped[str] = mapped_column(String(400), unique=True, index=True)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True, index=True)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    origin: Mapped[str] = mapped_column(String(32), default="manual", index=True)
    is_permanent: Mapped[bool] = mapped_column(Boolean, default=False)
    blocked_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    created_by: Mapped[str | None] = mapped_column(String(320), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime)

    def is_active(self, now: datetime) -> bool:
        if self.is_permanent:
            return True
        return self.blocked_until is not None and self.blocked_until > now
