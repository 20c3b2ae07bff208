"""
Tests for the delivery dispatcher and its plain-text fallback
"""

import asyncio
import logging

import pytest

from herald.core.delivery_dispatcher import DeliveryDispatcher, html_to_text
from herald.core.errors import TIMEOUT_ERROR, TransportError
from herald.core.models import ResolvedAttachment, SmtpCredentials

from conftest import FakeTransport, HangingTransport

CREDENTIALS = SmtpCredentials("smtp.example.com", 587, "mailer", "secret", "events@example.com", "Event Team")


class TestHtmlToText:

    def test_strips_tags_and_decodes_entities(self):
        text = html_to_text("<h1>Launch &amp; Party</h1><p>Doors open at 7&nbsp;pm.</p><p>Bring &quot;friends&quot;</p>")

        assert "Launch & Party" in text
        assert "Doors open at 7\xa0pm." in text
        assert '"friends"' in text
        assert "<" not in text

    def test_links_keep_their_target(self):
        text = html_to_text('<p>See <a href="https://example.com/e/42">the event page</a></p>')

        assert text == "See the event page (https://example.com/e/42)"

    def test_lists_and_line_breaks(self):
        text = html_to_text("<ul><li>Talks</li><li>Food</li></ul>Line one<br>Line two")

        assert "- Talks" in text
        assert "- Food" in text
        assert "Line one\nLine two" in text

    def test_empty(self):
        assert html_to_text("") == ""


class TestDispatch:

    @pytest.mark.asyncio
    async def test_success_returns_message_id(self):
        transport = FakeTransport(message_id="<abc@example.com>")
        dispatcher = DeliveryDispatcher(transport, timeout=1)

        result = await dispatcher.dispatch(CREDENTIALS, ["ana@example.com"], "Hello", "<p>Hi</p>")

        assert result.success is True
        assert result.post_id == "<abc@example.com>"
        assert result.to_dict() == {"success": True, "postId": "<abc@example.com>"}
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_message_carries_fallback_text_and_copies(self):
        transport = FakeTransport()
        dispatcher = DeliveryDispatcher(transport, timeout=1)
        attachment = ResolvedAttachment("a.pdf", b"%PDF", "application/pdf")

        await dispatcher.dispatch(
            CREDENTIALS, ["ana@example.com", " ben@example.com "], "Hello", "<p>Hi &amp; welcome</p>",
            attachments=[attachment], cc="cleo@example.com, dan@example.com", bcc=["eve@example.com"],
        )

        _, message = transport.calls[0]
        assert message.addresses == ("ana@example.com", "ben@example.com")
        assert message.text == "Hi & welcome"
        assert message.cc == ("cleo@example.com", "dan@example.com")
        assert message.bcc == ("eve@example.com",)
        assert message.attachments == (attachment,)

    @pytest.mark.asyncio
    async def test_explicit_plain_text_is_used(self):
        transport = FakeTransport()

        await DeliveryDispatcher(transport, timeout=1).dispatch(
            CREDENTIALS, ["ana@example.com"], "Hello", "<p>Hi</p>", plain_text="Plain hello",
        )

        assert transport.calls[0][1].text == "Plain hello"

    @pytest.mark.asyncio
    async def test_transport_error_becomes_failed_result(self):
        transport = FakeTransport(error=TransportError("550 mailbox unavailable"))

        result = await DeliveryDispatcher(transport, timeout=1).dispatch(
            CREDENTIALS, ["ana@example.com"], "Hello", "<p>Hi</p>",
        )

        assert result.success is False
        assert result.error == "550 mailbox unavailable"
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_never_escapes(self):
        transport = FakeTransport(error=ConnectionResetError())

        result = await DeliveryDispatcher(transport, timeout=1).dispatch(
            CREDENTIALS, ["ana@example.com"], "Hello", "<p>Hi</p>",
        )

        assert result.success is False
        assert result.error == "ConnectionResetError"


class TestTimeout:

    @pytest.mark.asyncio
    async def test_hanging_transport_reports_timeout(self):
        transport = HangingTransport()
        dispatcher = DeliveryDispatcher(transport, timeout=0.05)

        result = await dispatcher.dispatch(CREDENTIALS, ["ana@example.com"], "Hello", "<p>Hi</p>")

        assert result.success is False
        assert result.error == TIMEOUT_ERROR
        assert transport.calls == 1

    @pytest.mark.asyncio
    async def test_timed_out_call_is_not_cancelled(self, caplog):
        transport = HangingTransport()
        dispatcher = DeliveryDispatcher(transport, timeout=0.05)

        await dispatcher.dispatch(CREDENTIALS, ["ana@example.com"], "Hello", "<p>Hi</p>")
        assert dispatcher.in_flight == 1

        transport.release.set()
        with caplog.at_level(logging.WARNING, logger="herald.core.delivery_dispatcher"):
            remaining = await dispatcher.drain(timeout=1)

        assert remaining == 0
        assert transport.completed is True
        assert "may have been delivered" in caplog.text

    @pytest.mark.asyncio
    async def test_slow_but_in_time_transport_succeeds(self):
        transport = FakeTransport(delay=0.01)

        result = await DeliveryDispatcher(transport, timeout=1).dispatch(
            CREDENTIALS, ["ana@example.com"], "Hello", "<p>Hi</p>",
        )

        assert result.success is True
        assert await DeliveryDispatcher(transport).drain() == 0

    def test_default_timeout_comes_from_settings(self):
        assert DeliveryDispatcher(FakeTransport()).timeout == 30
