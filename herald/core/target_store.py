# herald/core/target_store.py
"""
Read access to persisted targets and groups.

The pipeline only ever reads from a store; creating and editing targets is
handled elsewhere.
"""

import re
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from herald.config.settings import DeliveryConfig
from herald.core.database_models import TargetGroupRecord, TargetRecord
from herald.core.models import Group, Target

logger = logging.getLogger(__name__)

CHANNEL_ID_PATTERN = re.compile(r'^[a-z0-9_-]+$', re.IGNORECASE)


class TargetStore(ABC):
    """Interface consumed by the target resolver"""

    @abstractmethod
    def list_targets(self, channel: str) -> List[Target]:
        ...

    @abstractmethod
    def list_groups(self, channel: str) -> List[Group]:
        ...


class InMemoryTargetStore(TargetStore):
    """Store backed by plain lists, keyed by channel"""

    def __init__(self,
                 targets: Optional[Dict[str, Iterable[Target]]] = None,
                 groups: Optional[Dict[str, Iterable[Group]]] = None):
        self._targets = {channel: list(items) for channel, items in (targets or {}).items()}
        self._groups = {channel: list(items) for channel, items in (groups or {}).items()}

    def list_targets(self, channel: str) -> List[Target]:
        return list(self._targets.get(channel, []))

    def list_groups(self, channel: str) -> List[Group]:
        return list(self._groups.get(channel, []))


def _safe_channel(channel: str) -> str:
    normalized = str(channel or '').strip()
    if not normalized or not CHANNEL_ID_PATTERN.match(normalized):
        raise ValueError(f"Invalid channel id: {channel!r}")
    return normalized


class JsonTargetStore(TargetStore):
    """
    Store reading ``<root>/<channel>/targets.json``.

    File layout::

        {"targets": [{"id": ..., "targetType": ..., "<baseField>": ...}],
         "groups": {"<groupId>": {"id": ..., "name": ..., "targetIds": [...]}}}

    ``groups`` may also be a list of group objects.
    """

    def __init__(self, root: Optional[Path] = None, filename: Optional[str] = None):
        self.root = Path(root) if root is not None else DeliveryConfig.target_data_root()
        self.filename = filename or DeliveryConfig.TARGET_DATA_FILENAME

    def _data_file(self, channel: str) -> Path:
        return self.root / _safe_channel(channel) / self.filename

    def _read(self, channel: str) -> Dict[str, Any]:
        path = self._data_file(channel)
        if not path.exists():
            logger.debug(f"No target data for channel {channel} at {path}")
            return {}
        with path.open('r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Target data root must be an object: {path}")
        return data

    def list_targets(self, channel: str) -> List[Target]:
        targets = []
        for record in self._read(channel).get('targets') or []:
            if not isinstance(record, dict):
                logger.warning(f"Ignoring malformed target entry in channel {channel}: {record!r}")
                continue
            targets.append(Target.from_dict(record))
        return targets

    def list_groups(self, channel: str) -> List[Group]:
        raw = self._read(channel).get('groups') or {}
        if isinstance(raw, dict):
            entries = list(raw.items())
        else:
            entries = [(None, record) for record in raw]

        groups = []
        for group_id, record in entries:
            if not isinstance(record, dict):
                logger.warning(f"Ignoring malformed group entry in channel {channel}: {record!r}")
                continue
            groups.append(Group.from_dict(record, group_id=group_id))
        return groups


class SqlTargetStore(TargetStore):
    """Store reading the ``targets`` and ``target_groups`` tables"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def list_targets(self, channel: str) -> List[Target]:
        session = self.session_factory()
        try:
            rows = (session.query(TargetRecord)
                    .filter_by(channel=channel)
                    .order_by(TargetRecord.created_at, TargetRecord.id)
                    .all())
            return [
                Target.from_dict({**(row.attributes or {}), 'id': row.id, 'targetType': row.target_type})
                for row in rows
            ]
        finally:
            session.close()

    def list_groups(self, channel: str) -> List[Group]:
        session = self.session_factory()
        try:
            rows = (session.query(TargetGroupRecord)
                    .filter_by(channel=channel)
                    .order_by(TargetGroupRecord.created_at, TargetGroupRecord.id)
                    .all())
            return [
                Group(id=row.id, name=row.name, target_ids=tuple(row.target_ids or ()))
                for row in rows
            ]
        finally:
            session.close()
