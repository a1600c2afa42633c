import logging
import smtplib
from decimal import Decimal
from email.message import EmailMessage
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from config import Settings, get_settings

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates" / "emails"


def format_money(value: object) -> str:
    return f"${Decimal(str(value)):,.2f}"


def _environment() -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape(["html"]),
    )
    env.filters["money"] = format_money
    return env


class EmailSender:
    """Renders an email template and hands it to SMTP.

    Delivery failures are logged and swallowed: callers treat sending as
    fire-and-forget.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.env = _environment()

    def render(self, template: str, data: dict[str, object]) -> str:
        return self.env.get_template(f"{template}.html").render(**data)

    def send(
        self, to: str, subject: str, template: str, data: dict[str, object]
    ) -> bool:
        try:
            body = self.render(template, data)
        except Exception:
            logger.exception(f"email_render_failed: template={template}")
            return False

        if not self.settings.smtp_host:
            logger.info(f"email_skipped: to={to} subject={subject!r} reason=no_smtp")
            return False

        message = EmailMessage()
        message["From"] = self.settings.mail_from
        message["To"] = to
        message["Subject"] = subject
        message.set_content("This message requires an HTML capable mail client.")
        message.add_alternative(body, subtype="html")
        try:
            with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port) as smtp:
                smtp.starttls()
                if self.settings.smtp_username:
                    smtp.login(self.settings.smtp_username, self.settings.smtp_password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError):
            logger.exception(f"email_send_failed: to={to} template={template}")
            return False
        logger.info(f"email_sent: to={to} template={template}")
        return True
