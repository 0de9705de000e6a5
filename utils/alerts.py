# utils/alerts.py
import logging
import smtplib
from email.message import EmailMessage
import os
from dotenv import load_dotenv

load_dotenv()

SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASS = os.getenv("SMTP_PASS")
ALERT_EMAIL = os.getenv("ALERT_EMAIL")
FROM_EMAIL = os.getenv("FROM_EMAIL")

logger = logging.getLogger("utils.alerts")


def alerts_enabled():
    return bool(SMTP_HOST and ALERT_EMAIL and FROM_EMAIL)


def build_alert_message(subject, body, attachments=None):
    """
    Build the alert e-mail, attaching each readable report file.

    Unreadable attachments are logged and left out; the alert still goes.
    """
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = FROM_EMAIL
    msg["To"] = ALERT_EMAIL
    msg.set_content(body)

    for path in attachments or []:
        try:
            with open(path, "rb") as f:
                payload = f.read()
        except OSError as e:
            logger.warning(f"Could not attach report {path}: {e}")
            continue
        msg.add_attachment(
            payload,
            maintype="application",
            subtype="octet-stream",
            filename=os.path.basename(path),
        )
    return msg


def _open_smtp():
    # implicit TLS on 465, otherwise upgrade with STARTTLS when offered
    if SMTP_PORT == 465:
        return smtplib.SMTP_SSL(SMTP_HOST, SMTP_PORT)
    server = smtplib.SMTP(SMTP_HOST, SMTP_PORT)
    server.ehlo()
    if server.has_extn("starttls"):
        server.starttls()
        server.ehlo()
    return server


def send_alert(subject, body, attachments=None):
    """
    E-mail a pass alert to ALERT_EMAIL.

    Args:
        subject (str): Subject line
        body (str): Plain-text body
        attachments (list, optional): Report file paths, sent as
            application/octet-stream

    Returns:
        bool: True if the SMTP server accepted the message

    Note:
        SMTP problems are logged and reported through the return value. A
        pass never fails because its alert could not be delivered.
    """
    if not alerts_enabled():
        logger.info(f"SMTP not configured, alert not sent: {subject}")
        return False

    msg = build_alert_message(subject, body, attachments)
    try:
        with _open_smtp() as server:
            if SMTP_USER and SMTP_PASS:
                server.login(SMTP_USER, SMTP_PASS)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"SMTP error while sending '{subject}': {e}")
        return False
    logger.info(f"Alert sent to {ALERT_EMAIL}: {subject}")
    return True
