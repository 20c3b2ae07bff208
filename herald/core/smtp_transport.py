# herald/core/smtp_transport.py
"""
SMTP Transport

Builds the MIME message for one announcement and sends it with aiosmtplib.
Port 465 uses implicit TLS, port 587 STARTTLS; other ports negotiate
STARTTLS opportunistically.
"""

import logging
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from typing import List, Optional

import aiosmtplib

from herald.config.settings import DeliveryConfig
from herald.core.delivery_dispatcher import Transport
from herald.core.errors import TransportError
from herald.core.models import OutboundMessage, ResolvedAttachment, SmtpCredentials, TransportReceipt

logger = logging.getLogger(__name__)

MAILER_NAME = 'Event Herald'


def _attachment_part(attachment: ResolvedAttachment, inline: bool) -> MIMEBase:
    maintype, _, subtype = (attachment.content_type or 'application/octet-stream').partition('/')
    part = MIMEBase(maintype or 'application', subtype or 'octet-stream')
    part.set_payload(attachment.content)
    encoders.encode_base64(part)

    if inline:
        part.add_header('Content-ID', f"<{attachment.content_id}>")
        part.add_header('Content-Disposition', 'inline', filename=attachment.filename)
    else:
        part.add_header('Content-Disposition', 'attachment', filename=attachment.filename)
    return part


def build_mime_message(credentials: SmtpCredentials, message: OutboundMessage) -> MIMEMultipart:
    """
    Create the RFC 5322 message.

    Layout::

        mixed
          related            (only with inline images)
            alternative
              text/plain
              text/html
            image/* ...      (Content-ID: <filename>)
          attachment ...     (only with regular attachments)

    Bcc recipients are never written to the headers.
    """
    alternative = MIMEMultipart('alternative')
    alternative.attach(MIMEText(message.text or '', 'plain', 'utf-8'))
    alternative.attach(MIMEText(message.html or '', 'html', 'utf-8'))

    inline = [a for a in message.attachments if a.content_id]
    regular = [a for a in message.attachments if not a.content_id]

    body = alternative
    if inline:
        body = MIMEMultipart('related')
        body.attach(alternative)
        for attachment in inline:
            body.attach(_attachment_part(attachment, inline=True))

    if regular:
        msg = MIMEMultipart('mixed')
        msg.attach(body)
        for attachment in regular:
            msg.attach(_attachment_part(attachment, inline=False))
    else:
        msg = body

    domain = credentials.from_email.rpartition('@')[2] or 'localhost'
    msg['Subject'] = message.subject
    msg['From'] = formataddr((credentials.from_name or '', credentials.from_email))
    msg['To'] = ', '.join(message.addresses)
    if message.cc:
        msg['Cc'] = ', '.join(message.cc)
    msg['Date'] = formatdate(localtime=True)
    msg['Message-ID'] = make_msgid(domain=domain)
    msg['X-Mailer'] = MAILER_NAME
    return msg


def envelope_recipients(message: OutboundMessage) -> List[str]:
    """To, Cc and Bcc addresses in delivery order"""
    return list(message.addresses) + list(message.cc) + list(message.bcc)


class SmtpTransport(Transport):
    """
    Send messages through an SMTP server.

    Args:
        connect_timeout: Seconds allowed for connecting and each command
        validate_certs: Verify the server's TLS certificate
    """

    def __init__(self, connect_timeout: Optional[float] = None, validate_certs: bool = True):
        self.connect_timeout = (
            connect_timeout if connect_timeout is not None else DeliveryConfig.SMTP_CONNECT_TIMEOUT_SECONDS
        )
        self.validate_certs = validate_certs

    def _client(self, credentials: SmtpCredentials) -> aiosmtplib.SMTP:
        if credentials.implicit_tls:
            start_tls = False
        elif credentials.port == 587:
            start_tls = True
        else:
            start_tls = None
        return aiosmtplib.SMTP(
            hostname=credentials.host,
            port=credentials.port,
            use_tls=credentials.implicit_tls,
            start_tls=start_tls,
            timeout=self.connect_timeout,
            validate_certs=self.validate_certs,
        )

    async def send(self, credentials: SmtpCredentials, message: OutboundMessage) -> TransportReceipt:
        msg = build_mime_message(credentials, message)
        recipients = envelope_recipients(message)
        smtp = self._client(credentials)

        try:
            await smtp.connect()
            if credentials.username and credentials.password:
                await smtp.login(credentials.username, credentials.password)
            refused, response = await smtp.send_message(msg, recipients=recipients)
        except aiosmtplib.SMTPResponseException as e:
            raise TransportError(f"{e.code} {e.message}") from e
        except aiosmtplib.SMTPException as e:
            raise TransportError(str(e)) from e
        finally:
            if smtp.is_connected:
                try:
                    await smtp.quit()
                except aiosmtplib.SMTPException as e:
                    logger.debug(f"Ignoring error while closing SMTP connection: {e}")

        if refused:
            logger.warning(f"SMTP server refused {len(refused)} recipient(s): {', '.join(refused)}")

        logger.info(f"SMTP accepted {msg['Message-ID']} for {len(recipients) - len(refused)} recipient(s)")
        return TransportReceipt(message_id=msg['Message-ID'], response=response)
