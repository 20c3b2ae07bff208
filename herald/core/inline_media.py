# herald/core/inline_media.py
"""
Inline Media Embedder

Rewrites <img> sources that point at one of the outgoing image attachments
into ``cid:`` references and tags those attachments with a Content-ID, so
mail clients render the images from the message itself.

The markup handled here is generated by our own templates; a regular
expression over <img> tags is sufficient for it.
"""

import re
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Sequence, Set

from herald.core.models import ResolvedAttachment

logger = logging.getLogger(__name__)

IMAGE_SRC_PATTERN = re.compile(r'<img[^>]+src=["\']([^"\']+)["\'][^>]*>', re.IGNORECASE)
EMBEDDABLE_IMAGE_TYPE = re.compile(r'^image/(jpeg|jpg|png|gif|webp|bmp)$', re.IGNORECASE)
CONTENT_REFERENCE_PREFIX = 'cid:'


@dataclass
class EmbedResult:
    markup: str
    attachments: List[ResolvedAttachment]
    matched: Set[str] = field(default_factory=set)


def is_embeddable_image(content_type: str) -> bool:
    return bool(content_type) and EMBEDDABLE_IMAGE_TYPE.match(content_type.strip()) is not None


def filename_from_url(url: str) -> str:
    """Last path segment of a URL without its query string"""
    return url.split('/')[-1].split('?')[0]


def extract_image_urls(markup: str) -> List[str]:
    """Image sources that are neither content references nor data URIs"""
    urls = []
    for match in IMAGE_SRC_PATTERN.finditer(markup or ''):
        url = match.group(1)
        if url.lower().startswith((CONTENT_REFERENCE_PREFIX, 'data:')):
            continue
        if url not in urls:
            urls.append(url)
    return urls


def tag_content_ids(attachments: Iterable[ResolvedAttachment], matched: Set[str]) -> List[ResolvedAttachment]:
    """Set ``content_id`` on matched image attachments, pass the rest through"""
    tagged = []
    for attachment in attachments:
        if attachment.filename in matched and is_embeddable_image(attachment.content_type):
            attachment = replace(attachment, content_id=attachment.filename)
        tagged.append(attachment)
    return tagged


def embed_inline_images(markup: str, attachments: Sequence[ResolvedAttachment]) -> EmbedResult:
    """
    Replace attachment image URLs in ``markup`` with content references.

    Running this again on its own output changes nothing: ``cid:`` sources
    are never rescanned.
    """
    by_filename: Dict[str, ResolvedAttachment] = {a.filename: a for a in attachments}
    rewritten = markup or ''
    matched: Set[str] = set()

    for url in extract_image_urls(rewritten):
        attachment = by_filename.get(filename_from_url(url))
        if attachment is None or not is_embeddable_image(attachment.content_type):
            continue

        pattern = re.compile(
            r'(<img[^>]+src=["\'])' + re.escape(url) + r'(["\'][^>]*>)',
            re.IGNORECASE,
        )
        reference = CONTENT_REFERENCE_PREFIX + attachment.filename
        rewritten = pattern.sub(lambda m: m.group(1) + reference + m.group(2), rewritten)
        matched.add(attachment.filename)

    if matched:
        logger.info(f"Embedded {len(matched)} inline image(s): {', '.join(sorted(matched))}")

    return EmbedResult(markup=rewritten, attachments=tag_content_ids(attachments, matched), matched=matched)
