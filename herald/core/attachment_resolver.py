# herald/core/attachment_resolver.py
"""
Attachment Resolver

Maps attachment references to validated byte content. Content is only read
from files whose canonical path lies inside one of the allow-listed storage
roots; anything else is skipped and reported, never raised.
"""

import os
import logging
import mimetypes
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from herald.config.settings import DeliveryConfig
from herald.core.errors import Skipped, SkipReason
from herald.core.models import FileHandle, ResolvedAttachment

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = 'application/octet-stream'


class AttachmentScope(Enum):
    """Whether attachments apply to every run or to one run only"""
    GLOBAL = "global"
    SPECIFIC = "specific"


@dataclass
class AttachmentResolution:
    scope: AttachmentScope
    attachments: List[ResolvedAttachment] = field(default_factory=list)
    skipped: List[Skipped] = field(default_factory=list)


def normalize_ref(ref: Any) -> Optional[str]:
    """
    Reduce an attachment reference to its lookup key.

    Accepts a bare id/filename string, a mapping or an object carrying
    ``id``, ``filename`` or ``name`` (checked in that order).
    """
    if isinstance(ref, str):
        key = ref
    elif isinstance(ref, dict):
        key = ref.get('id') or ref.get('filename') or ref.get('name')
    elif ref is not None and any(hasattr(ref, attr) for attr in ('id', 'filename', 'name')):
        key = getattr(ref, 'id', None) or getattr(ref, 'filename', None) or getattr(ref, 'name', None)
    else:
        key = None

    if not isinstance(key, str):
        return None
    return key.strip() or None


def merge_attachments(global_attachments: Sequence[ResolvedAttachment],
                      specific_attachments: Sequence[ResolvedAttachment]) -> List[ResolvedAttachment]:
    """Merge by filename; a run-specific file replaces a global one of the same name"""
    merged: Dict[str, ResolvedAttachment] = {}
    for attachment in global_attachments:
        merged[attachment.filename] = attachment
    for attachment in specific_attachments:
        merged[attachment.filename] = attachment
    return list(merged.values())


class AttachmentResolver:
    """
    Resolve attachment references against the available uploaded files.

    Args:
        allowed_roots: Storage roots content may be read from
            (defaults to the event storage and temporary upload roots)
        base_dir: Directory relative stored paths are resolved against
    """

    def __init__(self,
                 allowed_roots: Optional[Iterable[Union[str, Path]]] = None,
                 base_dir: Optional[Union[str, Path]] = None):
        roots = allowed_roots if allowed_roots is not None else DeliveryConfig.allowed_roots()
        self.allowed_roots = [Path(os.path.realpath(root)) for root in roots]
        self.base_dir = Path(base_dir if base_dir is not None else DeliveryConfig.FILE_BASE_DIR)

    def resolve(self,
                refs: Iterable[Any],
                available: Sequence[FileHandle],
                scope: AttachmentScope = AttachmentScope.GLOBAL) -> AttachmentResolution:
        resolution = AttachmentResolution(scope=scope)

        for ref in refs or ():
            key = normalize_ref(ref)
            if key is None:
                logger.warning(f"Invalid {scope.value} attachment reference: {ref!r}")
                resolution.skipped.append(Skipped(SkipReason.INVALID_REFERENCE, ref))
                continue

            handle = self._find(key, available)
            if handle is None:
                logger.warning(f"File not found for {scope.value} attachment: {key}")
                resolution.skipped.append(Skipped(SkipReason.NOT_FOUND, key))
                continue

            outcome = self._read(handle)
            if isinstance(outcome, Skipped):
                resolution.skipped.append(outcome)
            else:
                resolution.attachments.append(outcome)

        logger.info(
            f"Resolved {len(resolution.attachments)} {scope.value} attachment(s), "
            f"{len(resolution.skipped)} skipped"
        )
        return resolution

    def canonical_path(self, stored_path: str) -> Optional[Path]:
        """Canonical path of a stored file if it lies inside an allowed root"""
        if not stored_path or '\0' in stored_path:
            return None
        path = Path(stored_path)
        if not path.is_absolute():
            path = self.base_dir / path
        real = Path(os.path.realpath(path))
        for root in self.allowed_roots:
            if real == root or root in real.parents:
                return real
        return None

    @staticmethod
    def _find(key: str, available: Sequence[FileHandle]) -> Optional[FileHandle]:
        for handle in available:
            if key in (handle.id, handle.filename, handle.name):
                return handle
        return None

    def _read(self, handle: FileHandle) -> Union[ResolvedAttachment, Skipped]:
        real = self.canonical_path(handle.path)
        if real is None:
            logger.warning(f"Security: rejected attachment path outside allowed roots for file {handle.id}: {handle.path!r}")
            return Skipped(SkipReason.PATH_REJECTED, handle.id, 'path outside allowed storage roots')

        if not real.is_file():
            logger.warning(f"Security: attachment file missing for {handle.id}: {real}")
            return Skipped(SkipReason.NOT_FOUND, handle.id, 'file does not exist')

        try:
            content = real.read_bytes()
        except OSError as e:
            logger.warning(f"Security: attachment file unreadable for {handle.id}: {e}")
            return Skipped(SkipReason.UNREADABLE, handle.id, str(e))

        content_type = (
            handle.mime_type
            or mimetypes.guess_type(handle.display_name)[0]
            or mimetypes.guess_type(real.name)[0]
            or DEFAULT_CONTENT_TYPE
        )
        return ResolvedAttachment(filename=handle.display_name, content=content, content_type=content_type)
