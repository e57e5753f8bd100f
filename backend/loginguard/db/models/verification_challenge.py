from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from loginguard.db.base import Base

PENDING_CLAUSE = text("status = 'pending'")


class VerificationChallenge(Base):
    __tablename__ = "verification_challenges"
    __table_args__ = (
        # At most one pending challenge per email.
        Index(
            "uq_verification_challenges_pending_email",
            "email",
            unique=True,
            postgresql_where=PENDING_CLAUSE,
            sqlite_where=PENDING_CLAUSE,
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    token_hash: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    code_hash: Mapped[str] = mapped_column(String(128))
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    email: Mapped[str] = mapped_column(String(320), index=True)
    reason: Mapped[str] = mapped_column(String(64))
    # pending | verified | failed | expired | superseded
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    resend_count: Mapped[int] = mapped_column(Integer, default=0)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)
    fingerprint: Mapped[str | None] = mapped_column(String(120), nullable=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    resolved_with: Mapped[str | None] = mapped_column(String(20), nullable=True)
