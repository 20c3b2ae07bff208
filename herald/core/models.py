# herald/core/models.py
"""
Data model shared by the resolvers, the embedder and the dispatcher
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

# Record keys that describe the target itself rather than channel fields
_TARGET_RESERVED_KEYS = {'id', 'targetType', 'metadata'}

_PERSONALIZATION_KEYS = {
    'firstName': 'first_name',
    'lastName': 'last_name',
    'gender': 'gender',
    'salutationTone': 'salutation_tone',
}


@dataclass(frozen=True)
class Personalization:
    """Optional per-recipient data used for salutations"""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    gender: Optional[str] = None
    salutation_tone: Optional[str] = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Optional['Personalization']:
        values = {attr: record.get(key) for key, attr in _PERSONALIZATION_KEYS.items()}
        if not any(values.values()):
            return None
        return cls(**values)


@dataclass(frozen=True)
class Target:
    """One addressable destination within a channel"""
    id: str
    target_type: Optional[str]
    fields: Mapping[str, Any] = field(default_factory=dict)
    personalization: Optional[Personalization] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, record: Mapping[str, Any]) -> 'Target':
        """Build a target from its persisted (camelCase) record"""
        fields = {k: v for k, v in record.items() if k not in _TARGET_RESERVED_KEYS}
        return cls(
            id=str(record.get('id', '')),
            target_type=record.get('targetType') or None,
            fields=fields,
            personalization=Personalization.from_record(record),
            metadata=dict(record.get('metadata') or {}),
        )


@dataclass(frozen=True)
class Group:
    """Named, reusable collection of target ids"""
    id: str
    name: str
    target_ids: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, record: Mapping[str, Any], group_id: Optional[str] = None) -> 'Group':
        return cls(
            id=str(record.get('id') or group_id or ''),
            name=str(record.get('name') or ''),
            target_ids=tuple(str(t) for t in record.get('targetIds') or ()),
        )


class SelectionMode(Enum):
    ALL = "all"
    GROUPS = "groups"
    INDIVIDUAL = "individual"


@dataclass(frozen=True)
class TargetSelection:
    """The chosen scope for one publish attempt"""
    mode: Optional[SelectionMode]
    ids: Tuple[str, ...] = ()

    @classmethod
    def all(cls) -> 'TargetSelection':
        return cls(SelectionMode.ALL)

    @classmethod
    def groups(cls, ids: Iterable[str]) -> 'TargetSelection':
        return cls(SelectionMode.GROUPS, tuple(ids))

    @classmethod
    def individual(cls, ids: Iterable[str]) -> 'TargetSelection':
        return cls(SelectionMode.INDIVIDUAL, tuple(ids))

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> 'TargetSelection':
        """
        Parse the wire shape ``{"mode": ..., "groups": [...], "individual": [...]}``.
        Unknown or absent modes yield a selection that resolves to nothing.
        """
        if not data or not isinstance(data, Mapping):
            return cls(None)
        try:
            mode = SelectionMode(data.get('mode'))
        except ValueError:
            return cls(None)

        if mode == SelectionMode.GROUPS:
            ids = data.get('groups')
        elif mode == SelectionMode.INDIVIDUAL:
            ids = data.get('individual')
        else:
            ids = ()
        if not isinstance(ids, (list, tuple)):
            ids = ()
        return cls(mode, tuple(str(i) for i in ids))


@dataclass(frozen=True)
class ResolvedAddress:
    """A concrete delivery address produced by target resolution"""
    value: str
    target_id: str
    personalization: Optional[Personalization] = None


@dataclass(frozen=True)
class FileHandle:
    """A stored file that attachment references may point at"""
    id: str
    path: str
    filename: Optional[str] = None
    name: Optional[str] = None
    mime_type: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.filename or self.id

    @classmethod
    def from_dict(cls, record: Mapping[str, Any]) -> 'FileHandle':
        return cls(
            id=str(record.get('id') or ''),
            path=str(record.get('path') or ''),
            filename=record.get('filename'),
            name=record.get('name'),
            mime_type=record.get('type') or record.get('mimeType'),
        )


@dataclass(frozen=True)
class ResolvedAttachment:
    """Validated attachment content ready for delivery"""
    filename: str
    content: bytes
    content_type: str
    content_id: Optional[str] = None


@dataclass(frozen=True)
class DeliveryResult:
    """Channel-agnostic outcome of one delivery attempt"""
    success: bool
    post_id: Optional[str] = None
    url: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def succeeded(cls, post_id: Optional[str] = None, url: Optional[str] = None) -> 'DeliveryResult':
        return cls(success=True, post_id=post_id, url=url)

    @classmethod
    def failed(cls, error: str) -> 'DeliveryResult':
        return cls(success=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {'success': self.success}
        if self.post_id:
            data['postId'] = self.post_id
        if self.url:
            data['url'] = self.url
        if self.error:
            data['error'] = self.error
        return data


@dataclass(frozen=True)
class SmtpCredentials:
    """Validated SMTP connection settings"""
    host: str
    port: int
    username: str
    password: str
    from_email: str
    from_name: Optional[str] = None

    @property
    def implicit_tls(self) -> bool:
        return self.port == 465

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> 'SmtpCredentials':
        return cls(
            host=str(data.get('host') or '').strip(),
            port=int(data.get('port')),
            username=str(data.get('username') or ''),
            password=str(data.get('password') or ''),
            from_email=str(data.get('fromEmail') or data.get('from_email') or '').strip(),
            from_name=data.get('fromName') or data.get('from_name'),
        )


@dataclass(frozen=True)
class OutboundMessage:
    """Everything a transport needs for one send"""
    addresses: Tuple[str, ...]
    subject: str
    html: str
    text: str
    attachments: Tuple[ResolvedAttachment, ...] = ()
    cc: Tuple[str, ...] = ()
    bcc: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TransportReceipt:
    """Provider-native success payload returned by a transport"""
    message_id: Optional[str]
    url: Optional[str] = None
    response: Optional[str] = None
