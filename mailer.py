from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage

from config import Config
from exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


def send_password_reset(config: Config, email: str, link: str) -> bool:
    """Mail the reset link. Without SMTP settings the link is only logged."""
    if not config.smtp_host:
        logger.info("PASSWORD_RESET_LINK email=%s link=%s", email, link)
        return False

    msg = EmailMessage()
    msg["Subject"] = "Surf Shop - Forgot Password / Reset"
    msg["From"] = config.smtp_from or config.smtp_user or "no-reply@surf-shop.local"
    msg["To"] = email
    msg.set_content(
        "You are receiving this because you (or someone else) have requested the reset "
        "of the password for your account.\n\n"
        f"Please click on the following link, or copy and paste it into your browser:\n{link}\n\n"
        "If you did not request this, please ignore this email and your password will remain unchanged."
    )
    try:
        with smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=10) as server:
            server.ehlo()
            server.starttls()
            if config.smtp_user and config.smtp_pass:
                server.login(config.smtp_user, config.smtp_pass)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as exc:
        logger.exception("Password reset email failed email=%s", email)
        raise ExternalServiceError(f"Could not send email: {exc}") from exc
    logger.info("Password reset email sent email=%s", email)
    return True
