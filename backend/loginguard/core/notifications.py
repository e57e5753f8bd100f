import os
import logging
import smtplib
from datetime import datetime
from email.message import EmailMessage

logger = logging.getLogger(__name__)

REASON_LABELS: dict[str, str] = {
    "too_many_failed_attempts": "several failed sign-in attempts on your account",
    "new_device": "a sign-in from a device we have not seen before",
}


def _deliver(email: str, subject: str, body: str) -> bool:
    host = os.getenv("SMTP_HOST")
    user = os.getenv("SMTP_USER")
    password = os.getenv("SMTP_PASSWORD")
    sender = os.getenv("SMTP_FROM", user or "")
    port = int(os.getenv("SMTP_PORT", "587"))
    use_tls = os.getenv("SMTP_USE_TLS", "true").lower() == "true"

    if not host or not user or not password or not sender:
        return False

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = email
    msg.set_content(body)

    try:
        with smtplib.SMTP(host, port, timeout=10) as server:
            if use_tls:
                server.starttls()
            server.login(user, password)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError):
        logger.warning("Email delivery failed email=%s subject=%s", email, subject, exc_info=True)
        return False

    return True


def send_verification_code_email(email: str, code: str, reason: str) -> bool:
    why = REASON_LABELS.get(reason, "unusual sign-in activity")
    return _deliver(
        email,
        "Your sign-in verification code",
        f"We noticed {why}.\n"
        f"Your verification code: {code}\n"
        "The code is valid for a limited time. If this was not you, change your password.",
    )


def send_lockout_alert_email(email: str, attempt_count: int, locked_until: datetime | None) -> bool:
    if locked_until is not None:
        until = f"until {locked_until.strftime('%Y-%m-%d %H:%M')} UTC"
    else:
        until = "until an administrator unlocks it"
    return _deliver(
        email,
        "Your account has been temporarily locked",
        f"We saw {attempt_count} failed sign-in attempts on your account, so sign-in is locked {until}.\n"
        "If this was not you, change your password as soon as you can sign in again.",
    )
