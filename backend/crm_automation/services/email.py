import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from crm_automation import config

logger = logging.getLogger(__name__)


def convert_text_to_html(plain_text: str) -> str:
    """Plain-text bodies keep their line breaks; bodies that already contain markup are left alone."""
    if not plain_text:
        return ""
    if "<" in plain_text and ">" in plain_text:
        return plain_text
    return html.escape(plain_text).replace("\n", "<br>")


def send_email(subject: str, body: str, recipient_email: str, entity_id: Optional[str] = None):
    """
    Sends an HTML email through the configured SMTP relay. Blocking; callers on the
    event loop run it in a thread.
    """
    if not subject or not subject.strip():
        raise ValueError("Email subject is required")
    if not body or not body.strip():
        raise ValueError("Email body is required")
    if not recipient_email or not recipient_email.strip():
        raise ValueError("Recipient email is required")

    if not config.SMTP_USERNAME or not config.SMTP_PASSWORD:
        error_msg = "Missing SMTP credentials in environment"
        logger.error(f"[EMAIL] {error_msg}")
        logger.error(f"[EMAIL] SMTP_USERNAME: {'SET' if config.SMTP_USERNAME else 'MISSING'}")
        logger.error(f"[EMAIL] SMTP_PASSWORD: {'SET' if config.SMTP_PASSWORD else 'MISSING'}")
        raise EnvironmentError(error_msg)

    logger.info(f"[EMAIL] === EMAIL SENDING STARTED ===")
    logger.info(f"[EMAIL] Entity ID: {entity_id}")
    logger.info(f"[EMAIL] Recipient: {recipient_email}")
    logger.info(f"[EMAIL] Subject: {subject}")

    sender = config.SMTP_FROM or config.SMTP_USERNAME
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = recipient_email
    msg["Reply-To"] = sender
    msg["List-Unsubscribe"] = f"<mailto:{sender}?subject=unsubscribe>"
    msg.attach(MIMEText(convert_text_to_html(body), "html"))

    try:
        logger.debug(f"[EMAIL] Connecting to {config.SMTP_HOST}:{config.SMTP_PORT}")
        with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT) as server:
            server.starttls()
            server.login(config.SMTP_USERNAME, config.SMTP_PASSWORD)
            server.send_message(msg)
        logger.info(f"[EMAIL] === EMAIL SENT SUCCESSFULLY === recipient={recipient_email} entity={entity_id}")

    except smtplib.SMTPAuthenticationError as e:
        logger.error(f"[EMAIL] SMTP Authentication failed for entity {entity_id}: {e}")
        raise
    except smtplib.SMTPRecipientsRefused as e:
        logger.error(f"[EMAIL] SMTP Recipients refused for entity {entity_id}: {e}")
        raise
    except smtplib.SMTPException as e:
        logger.error(f"[EMAIL] SMTP Exception for entity {entity_id}: {e}")
        raise
