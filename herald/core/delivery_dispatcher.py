# herald/core/delivery_dispatcher.py
"""
Delivery Dispatcher

Performs exactly one outbound transport call, raced against a wall-clock
timeout, and translates the outcome into a DeliveryResult. The dispatcher
never raises once a send has been attempted.
"""

import re
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional, Sequence, Set

from bs4 import BeautifulSoup

from herald.config.settings import DeliveryConfig
from herald.core.errors import TIMEOUT_ERROR
from herald.core.models import DeliveryResult, OutboundMessage, ResolvedAttachment, TransportReceipt

logger = logging.getLogger(__name__)


class Transport(ABC):
    """One outbound call per channel"""

    @abstractmethod
    async def send(self, credentials: Any, message: OutboundMessage) -> TransportReceipt:
        """Send the message or raise on network/protocol failure"""
        ...


def html_to_text(html_content: str) -> str:
    """
    Convert HTML to plain text for the text/plain alternative
    """
    if not html_content:
        return ""

    soup = BeautifulSoup(html_content, 'html.parser')

    for br in soup.find_all('br'):
        br.replace_with('\n')

    for p in soup.find_all('p'):
        p.insert_after('\n\n')

    for header in soup.find_all(['h1', 'h2', 'h3', 'h4', 'h5', 'h6']):
        header.insert_before('\n')
        header.insert_after('\n')

    for li in soup.find_all('li'):
        li.insert_before('- ')
        li.insert_after('\n')

    for link in soup.find_all('a', href=True):
        link_text = link.get_text()
        href = link['href']
        if href != link_text:
            link.replace_with(f"{link_text} ({href})")

    # get_text() also decodes entities
    text = soup.get_text()

    text = re.sub(r'[ \t]+', ' ', text)
    text = re.sub(r' *\n *', '\n', text)
    text = re.sub(r'\n{3,}', '\n\n', text)
    return text.strip()


def _address_tuple(addresses: Optional[Iterable[str]]) -> tuple:
    if not addresses:
        return ()
    if isinstance(addresses, str):
        addresses = addresses.split(',')
    return tuple(a.strip() for a in addresses if a and a.strip())


class DeliveryDispatcher:
    """
    Dispatch a message through a transport with a hard timeout.

    On timeout the in-flight transport call is NOT cancelled; only its result
    is suppressed. A send that completes afterwards is logged as a late
    completion because the caller has already been told it failed.
    """

    def __init__(self, transport: Transport, timeout: Optional[float] = None):
        self.transport = transport
        self.timeout = timeout if timeout is not None else DeliveryConfig.SEND_TIMEOUT_SECONDS
        self._in_flight: Set[asyncio.Future] = set()

    @property
    def in_flight(self) -> int:
        """Transport calls still running after their dispatch timed out"""
        return len(self._in_flight)

    async def dispatch(self,
                       credentials: Any,
                       addresses: Sequence[str],
                       subject: str,
                       markup: str,
                       plain_text: Optional[str] = None,
                       attachments: Sequence[ResolvedAttachment] = (),
                       cc: Optional[Iterable[str]] = None,
                       bcc: Optional[Iterable[str]] = None) -> DeliveryResult:
        message = OutboundMessage(
            addresses=_address_tuple(addresses),
            subject=subject,
            html=markup,
            text=plain_text if plain_text else html_to_text(markup),
            attachments=tuple(attachments),
            cc=_address_tuple(cc),
            bcc=_address_tuple(bcc),
        )

        logger.info(f"Dispatching to {len(message.addresses)} address(es) with {len(message.attachments)} attachment(s)")
        task = asyncio.ensure_future(self.transport.send(credentials, message))
        done, _ = await asyncio.wait({task}, timeout=self.timeout)

        if task not in done:
            logger.error(f"Transport did not settle within {self.timeout}s; reporting timeout")
            self._in_flight.add(task)
            task.add_done_callback(self._late_completion)
            return DeliveryResult.failed(TIMEOUT_ERROR)

        if task.cancelled():
            logger.error("Transport call was cancelled")
            return DeliveryResult.failed("cancelled")

        exc = task.exception()
        if exc is not None:
            logger.error(f"Transport failed: {exc}")
            return DeliveryResult.failed(str(exc) or exc.__class__.__name__)

        receipt = task.result()
        logger.info(f"Transport accepted message: {receipt.message_id}")
        return DeliveryResult.succeeded(post_id=receipt.message_id, url=receipt.url)

    async def drain(self, timeout: Optional[float] = None) -> int:
        """
        Wait for timed-out transport calls to settle.

        Returns the number still running afterwards.
        """
        if self._in_flight:
            await asyncio.wait(set(self._in_flight), timeout=timeout)
        return len(self._in_flight)

    def _late_completion(self, task: asyncio.Future) -> None:
        self._in_flight.discard(task)
        if task.cancelled():
            logger.warning("Timed-out transport call was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"Timed-out transport call failed later: {exc}")
        else:
            receipt = task.result()
            logger.warning(
                f"Timed-out transport call completed later (message {receipt.message_id}); "
                f"it was reported as failed and may have been delivered"
            )
