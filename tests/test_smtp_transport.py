"""
Tests for MIME assembly and the aiosmtplib transport (SMTP client mocked)
"""

from unittest.mock import AsyncMock, MagicMock, patch

import aiosmtplib
import pytest

from herald.core.errors import TransportError
from herald.core.models import OutboundMessage, ResolvedAttachment, SmtpCredentials
from herald.core.smtp_transport import SmtpTransport, build_mime_message, envelope_recipients

CREDENTIALS = SmtpCredentials("smtp.example.com", 587, "mailer", "secret", "events@example.com", "Event Team")

LOGO = ResolvedAttachment("logo.png", b"\x89PNG", "image/png", content_id="logo.png")
AGENDA = ResolvedAttachment("agenda.pdf", b"%PDF", "application/pdf")


def make_message(**overrides):
    fields = dict(
        addresses=("ana@example.com", "ben@example.com"),
        subject="Launch party",
        html='<p>Hi</p><img src="cid:logo.png">',
        text="Hi",
    )
    fields.update(overrides)
    return OutboundMessage(**fields)


class TestBuildMimeMessage:

    def test_headers(self):
        msg = build_mime_message(CREDENTIALS, make_message(cc=("cleo@example.com",), bcc=("eve@example.com",)))

        assert msg["Subject"] == "Launch party"
        assert msg["From"] == "Event Team <events@example.com>"
        assert msg["To"] == "ana@example.com, ben@example.com"
        assert msg["Cc"] == "cleo@example.com"
        assert msg["Bcc"] is None
        assert msg["Message-ID"].endswith("@example.com>")

    def test_text_only_message_is_alternative(self):
        msg = build_mime_message(CREDENTIALS, make_message())

        assert msg.get_content_type() == "multipart/alternative"
        assert [p.get_content_type() for p in msg.get_payload()] == ["text/plain", "text/html"]

    def test_inline_images_go_into_related_part(self):
        msg = build_mime_message(CREDENTIALS, make_message(attachments=(LOGO,)))

        assert msg.get_content_type() == "multipart/related"
        alternative, image = msg.get_payload()
        assert alternative.get_content_type() == "multipart/alternative"
        assert image.get_content_type() == "image/png"
        assert image["Content-ID"] == "<logo.png>"
        assert image.get_content_disposition() == "inline"
        assert image.get_payload(decode=True) == b"\x89PNG"

    def test_regular_attachments_go_into_mixed_part(self):
        msg = build_mime_message(CREDENTIALS, make_message(attachments=(LOGO, AGENDA)))

        assert msg.get_content_type() == "multipart/mixed"
        related, pdf = msg.get_payload()
        assert related.get_content_type() == "multipart/related"
        assert pdf.get_content_type() == "application/pdf"
        assert pdf.get_content_disposition() == "attachment"
        assert pdf.get_filename() == "agenda.pdf"
        assert pdf["Content-ID"] is None

    def test_envelope_includes_bcc(self):
        message = make_message(cc=("cleo@example.com",), bcc=("eve@example.com",))

        assert envelope_recipients(message) == [
            "ana@example.com", "ben@example.com", "cleo@example.com", "eve@example.com",
        ]


class TestSmtpTransport:

    @pytest.fixture
    def smtp_client(self):
        client = MagicMock()
        client.connect = AsyncMock()
        client.login = AsyncMock()
        client.send_message = AsyncMock(return_value=({}, "250 OK queued"))
        client.quit = AsyncMock()
        client.is_connected = True
        return client

    @pytest.mark.asyncio
    async def test_send_connects_logs_in_and_quits(self, smtp_client):
        with patch("herald.core.smtp_transport.aiosmtplib.SMTP", return_value=smtp_client) as smtp_cls:
            receipt = await SmtpTransport(connect_timeout=10).send(
                CREDENTIALS, make_message(bcc=("eve@example.com",)),
            )

        kwargs = smtp_cls.call_args.kwargs
        assert kwargs["hostname"] == "smtp.example.com"
        assert kwargs["port"] == 587
        assert kwargs["use_tls"] is False
        assert kwargs["start_tls"] is True
        assert kwargs["timeout"] == 10
        smtp_client.login.assert_awaited_once_with("mailer", "secret")
        sent, = smtp_client.send_message.await_args.args
        assert smtp_client.send_message.await_args.kwargs["recipients"] == [
            "ana@example.com", "ben@example.com", "eve@example.com",
        ]
        assert receipt.message_id == sent["Message-ID"]
        assert receipt.response == "250 OK queued"
        smtp_client.quit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_port_465_uses_implicit_tls(self, smtp_client):
        credentials = SmtpCredentials("smtp.example.com", 465, "mailer", "secret", "events@example.com")

        with patch("herald.core.smtp_transport.aiosmtplib.SMTP", return_value=smtp_client) as smtp_cls:
            await SmtpTransport().send(credentials, make_message())

        kwargs = smtp_cls.call_args.kwargs
        assert kwargs["use_tls"] is True
        assert kwargs["start_tls"] is False

    @pytest.mark.asyncio
    async def test_smtp_rejection_raises_transport_error(self, smtp_client):
        smtp_client.send_message.side_effect = aiosmtplib.SMTPResponseException(550, "Mailbox unavailable")

        with patch("herald.core.smtp_transport.aiosmtplib.SMTP", return_value=smtp_client):
            with pytest.raises(TransportError, match="550 Mailbox unavailable"):
                await SmtpTransport().send(CREDENTIALS, make_message())

        smtp_client.quit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connection_failure_raises_transport_error(self, smtp_client):
        smtp_client.connect.side_effect = aiosmtplib.SMTPConnectError("connection refused")
        smtp_client.is_connected = False

        with patch("herald.core.smtp_transport.aiosmtplib.SMTP", return_value=smtp_client):
            with pytest.raises(TransportError):
                await SmtpTransport().send(CREDENTIALS, make_message())

        smtp_client.quit.assert_not_awaited()
