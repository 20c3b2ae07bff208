"""
Shared fixtures: allow-listed storage roots under tmp_path, a small email
audience and a fake transport.
"""

import asyncio

import pytest

from herald.core.attachment_resolver import AttachmentResolver
from herald.core.delivery_dispatcher import Transport
from herald.core.models import FileHandle, Group, Target, TransportReceipt
from herald.core.target_store import InMemoryTargetStore


class FakeTransport(Transport):
    """Records every send and returns a fixed message id"""

    def __init__(self, message_id="<msg-1@example.com>", error=None, delay=0.0):
        self.message_id = message_id
        self.error = error
        self.delay = delay
        self.calls = []

    async def send(self, credentials, message):
        self.calls.append((credentials, message))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return TransportReceipt(message_id=self.message_id)


class HangingTransport(Transport):
    """Never settles unless released"""

    def __init__(self):
        self.release = asyncio.Event()
        self.calls = 0
        self.completed = False

    async def send(self, credentials, message):
        self.calls += 1
        await self.release.wait()
        self.completed = True
        return TransportReceipt(message_id="<late@example.com>")


@pytest.fixture
def storage(tmp_path):
    """Event storage and upload roots plus a directory outside both"""
    events = tmp_path / "events"
    uploads = tmp_path / "temp" / "uploads"
    outside = tmp_path / "outside"
    for directory in (events, uploads, outside):
        directory.mkdir(parents=True)
    return {"base": tmp_path, "events": events, "uploads": uploads, "outside": outside}


@pytest.fixture
def attachment_resolver(storage):
    return AttachmentResolver(
        allowed_roots=[storage["events"], storage["uploads"]],
        base_dir=storage["base"],
    )


@pytest.fixture
def make_file(storage):
    """Write bytes under a root and return a matching FileHandle"""
    def _make(file_id, name, content=b"data", root="events", mime_type=None):
        path = storage[root] / name
        path.write_bytes(content)
        return FileHandle(id=file_id, path=str(path), filename=name, name=name, mime_type=mime_type)
    return _make


@pytest.fixture
def email_targets():
    return [
        Target.from_dict({"id": "t1", "targetType": "email", "email": "ana@example.com",
                          "firstName": "Ana", "salutationTone": "informal"}),
        Target.from_dict({"id": "t2", "targetType": "email", "email": "ben@example.com"}),
        Target.from_dict({"id": "t3", "targetType": "email", "email": "ANA@example.com",
                          "firstName": "Anabel"}),
        Target.from_dict({"id": "t4", "email": "untyped@example.com"}),
        Target.from_dict({"id": "t5", "targetType": "email", "email": "not-an-address"}),
        Target.from_dict({"id": "t6", "targetType": "email", "email": "cleo@example.com"}),
    ]


@pytest.fixture
def email_groups():
    return [
        Group(id="g1", name="Speakers", target_ids=("t1", "t2")),
        Group(id="g2", name="Volunteers", target_ids=("t2", "t6", "missing")),
    ]


@pytest.fixture
def email_store(email_targets, email_groups):
    return InMemoryTargetStore(targets={"email": email_targets}, groups={"email": email_groups})


@pytest.fixture
def smtp_settings():
    return {
        "host": "smtp.example.com",
        "port": 587,
        "username": "mailer",
        "password": "secret",
        "fromEmail": "events@example.com",
        "fromName": "Event Team",
    }
