"""SMTP dispatch of generated reports."""
import logging
import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from typing import Iterable, Optional

_log = logging.getLogger('onduty')

XLSX_MAINTYPE = 'application'
XLSX_SUBTYPE = 'vnd.openxmlformats-officedocument.spreadsheetml.sheet'


class SmtpNotConfigured(Exception):
    def __init__(self, message: str = "SMTP settings are not fully configured."):
        super().__init__(message)


def is_configured(settings: Optional[dict]) -> bool:
    return bool(settings and settings.get('host') and settings.get('port') and settings.get('from_email'))


def build_message(settings: dict, recipients: Iterable[str], subject: str, body: str,
                  filename: Optional[str] = None, attachment: Optional[bytes] = None) -> EmailMessage:
    msg = EmailMessage()
    msg['Subject'] = subject
    msg['From'] = formataddr((settings.get('from_name') or '', settings['from_email']))
    msg['To'] = ', '.join(recipients)
    msg.set_content(body)
    if attachment is not None:
        msg.add_attachment(attachment, maintype=XLSX_MAINTYPE, subtype=XLSX_SUBTYPE, filename=filename)
    return msg


def send_report(settings: dict, recipients: Iterable[str], subject: str, body: str,
                filename: str, attachment: bytes, timeout: float = 30.0) -> None:
    """Send one report as an attachment. ``settings['secure']`` selects implicit TLS, otherwise STARTTLS is tried."""
    if not is_configured(settings):
        raise SmtpNotConfigured()
    recipients = [r for r in recipients if r]
    if not recipients:
        raise ValueError("INVALID:RECIPIENTS:at least one recipient is required")
    msg = build_message(settings, recipients, subject, body, filename, attachment)
    host, port = settings['host'], int(settings['port'])
    if settings.get('secure'):
        server = smtplib.SMTP_SSL(host, port, timeout=timeout)
    else:
        server = smtplib.SMTP(host, port, timeout=timeout)
    with server as smtp:
        smtp.ehlo()
        if not settings.get('secure') and smtp.has_extn('starttls'):
            smtp.starttls()
        if settings.get('username'):
            smtp.login(settings['username'], settings.get('password') or '')
        smtp.send_message(msg)
    _log.info("Report %s mailed to %d recipient(s)", filename, len(recipients))
