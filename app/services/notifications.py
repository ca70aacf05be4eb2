from __future__ import annotations

import logging
import re
import smtplib
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from typing import Any

from app.settings import get_display_timezone, get_settings

logger = logging.getLogger("app.notifications")

EMAIL_ADDRESS_PATTERN = re.compile(r"^[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+$")


@dataclass(frozen=True, slots=True)
class NotificationMessage:
    recipients: list[str]
    subject: str
    body: str


class NotificationChannel:
    configured: bool = False

    def send(self, message: NotificationMessage) -> dict[str, Any]:
        raise NotImplementedError


def is_valid_email(value: str | None) -> bool:
    return bool(value) and EMAIL_ADDRESS_PATTERN.match(value or "") is not None


class EmailChannel(NotificationChannel):
    def __init__(self) -> None:
        settings = get_settings()
        self.enabled = bool(settings.notification_email_enabled)
        self.smtp_host = (settings.smtp_host or "").strip()
        self.smtp_port = int(settings.smtp_port or 587)
        self.smtp_user = (settings.smtp_user or "").strip()
        self.smtp_pass = settings.smtp_pass or ""
        self.smtp_from = (settings.smtp_from or "").strip()
        self.smtp_use_tls = bool(settings.smtp_use_tls)
        self.configured = bool(self.smtp_host and self.smtp_from)

    def send(self, message: NotificationMessage) -> dict[str, Any]:
        recipients = [item.strip() for item in message.recipients if item and item.strip()]
        if not self.enabled:
            logger.info(
                "email_channel_disabled",
                extra={"subject": message.subject, "recipient_count": len(recipients)},
            )
            return {"mode": "disabled", "sent": 0, "recipients": recipients}
        if not recipients:
            logger.info("email_channel_skip_no_recipients", extra={"subject": message.subject})
            return {"mode": "skipped_no_recipients", "sent": 0, "recipients": []}
        if not self.configured:
            # Body is left out: it may carry a one-time code.
            logger.info(
                "email_channel_not_configured",
                extra={"subject": message.subject, "recipients": recipients},
            )
            return {"mode": "not_configured", "sent": 0, "recipients": recipients}

        email_message = EmailMessage()
        email_message["From"] = self.smtp_from
        email_message["To"] = ", ".join(recipients)
        email_message["Subject"] = message.subject
        email_message.set_content(message.body)

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=15) as smtp_client:
            if self.smtp_use_tls:
                smtp_client.starttls()
            if self.smtp_user:
                smtp_client.login(self.smtp_user, self.smtp_pass)
            smtp_client.send_message(email_message)
        return {"mode": "sent", "sent": len(recipients), "recipients": recipients}

    def config_status(self) -> dict[str, Any]:
        missing_fields: list[str] = []
        if not self.smtp_host:
            missing_fields.append("SMTP_HOST")
        if not self.smtp_from:
            missing_fields.append("SMTP_FROM")
        return {
            "enabled": bool(self.enabled),
            "configured": self.configured,
            "smtp_host_set": bool(self.smtp_host),
            "smtp_from_set": bool(self.smtp_from),
            "smtp_user_set": bool(self.smtp_user),
            "smtp_use_tls": bool(self.smtp_use_tls),
            "missing_fields": missing_fields,
        }


def safe_send(channel: NotificationChannel, message: NotificationMessage) -> dict[str, Any]:
    """Deliver best-effort; a failing channel never fails the caller."""
    try:
        return channel.send(message)
    except Exception as exc:
        logger.exception(
            "notification_email_send_failed",
            extra={
                "subject": message.subject,
                "recipients": list(message.recipients),
            },
        )
        return {
            "mode": "send_exception",
            "sent": 0,
            "recipients": list(message.recipients),
            "error": str(exc)[:500],
        }


def get_notification_channel_health() -> dict[str, Any]:
    return {"email": EmailChannel().config_status()}


def format_display_time(value: datetime) -> str:
    local_value = value.astimezone(get_display_timezone())
    return local_value.strftime("%Y-%m-%d %H:%M %Z")


def build_welcome_message(
    *,
    email: str,
    username: str,
    role_label: str,
    verification_code: str | None = None,
) -> NotificationMessage:
    app_name = get_settings().app_name
    lines = [
        f"Dear {username},",
        "",
        f"You have been registered as {role_label} in {app_name}.",
        f"Your username is: {username}",
        "Sign in with the password you chose at registration.",
    ]
    if verification_code:
        lines.extend(
            [
                "",
                f"Your verification code is: {verification_code}",
                f"It is valid for {get_settings().registration_otp_minutes} minutes.",
            ]
        )
    lines.extend(["", f"Welcome to {app_name}!"])
    return NotificationMessage(
        recipients=[email],
        subject=f"Welcome to {app_name} - {role_label.capitalize()} Registration",
        body="\n".join(lines),
    )


def build_password_reset_message(*, email: str, code: str, ttl_minutes: int) -> NotificationMessage:
    app_name = get_settings().app_name
    body = (
        f"Dear {email},\n\n"
        f"You have requested a password reset for your {app_name} account.\n\n"
        f"Your one-time code is: {code}\n\n"
        f"It expires in {ttl_minutes} minutes.\n\n"
        "If you did not request this password reset, please ignore this message."
    )
    return NotificationMessage(recipients=[email], subject=f"{app_name} - Password Reset Code", body=body)


def build_resent_code_message(*, email: str, code: str, expires_at: datetime) -> NotificationMessage:
    body = f"This is your new one-time code: {code}.\n\nIt will expire at {format_display_time(expires_at)}."
    return NotificationMessage(recipients=[email], subject="One-time code resent", body=body)


def build_manager_appointment_message(*, email: str, username: str, department_name: str | None) -> NotificationMessage:
    app_name = get_settings().app_name
    department_line = f" for the {department_name} department" if department_name else ""
    body = (
        f"Dear {username},\n\n"
        f"You have been appointed as manager{department_line} in {app_name}.\n\n"
        f"Your username is: {username}\n"
        "Use the password provided by your administrator to sign in.\n\n"
        f"Welcome to {app_name}!"
    )
    return NotificationMessage(
        recipients=[email],
        subject=f"Welcome to {app_name} - Manager Appointment",
        body=body,
    )
