# herald/services/email_publisher.py
"""
Email Publisher

Runs the delivery pipeline for every run of a publish request:

    credentials checked -> targets resolved -> global attachments resolved
    -> markup embedded -> specific attachments merged -> dispatched

Credentials are checked once per request, before any target or attachment
is touched. A run whose selection resolves to nobody fails before any file
is read. Once dispatch is reached every outcome is a DeliveryResult.
"""

import time
import uuid
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from email_validator import validate_email, EmailNotValidError

from herald.core.attachment_resolver import (
    AttachmentResolution, AttachmentResolver, AttachmentScope, merge_attachments,
)
from herald.core.credential_guard import CredentialGuard
from herald.core.delivery_dispatcher import DeliveryDispatcher, Transport
from herald.core.errors import ConfigurationError, EmptyTargetSetError, PublishError, Skipped, SkipReason
from herald.core.inline_media import embed_inline_images, is_embeddable_image, tag_content_ids
from herald.core.models import DeliveryResult, FileHandle, SmtpCredentials, TargetSelection
from herald.core.smtp_transport import SmtpTransport
from herald.core.target_resolver import TargetResolver
from herald.core.target_schema import email_schema
from herald.core.target_store import TargetStore
from herald.services.publish_events import LoggingPublishEvents, PublishEvents

logger = logging.getLogger(__name__)

NO_RUNS_ERROR = "no runs"


class PublishStage(Enum):
    """Furthest state a publish attempt reached"""
    INIT = "init"
    CREDENTIALS_CHECKED = "credentials_checked"
    TARGETS_RESOLVED = "targets_resolved"
    ATTACHMENTS_RESOLVED = "attachments_resolved"
    MARKUP_EMBEDDED = "markup_embedded"
    DISPATCHED = "dispatched"


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


@dataclass
class PublishRun:
    """One outgoing message: its audience, content and own attachments"""
    run_id: str
    selection: TargetSelection
    subject: str
    html: str
    text: Optional[str] = None
    attachment_refs: List[Any] = field(default_factory=list)
    cc: Any = None
    bcc: Any = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], index: int = 0) -> 'PublishRun':
        return cls(
            run_id=str(data.get('runId') or data.get('id') or f"run-{index + 1}"),
            selection=TargetSelection.from_dict(data.get('targets') or data.get('selection')),
            subject=str(data.get('subject') or ''),
            html=str(data.get('html') or data.get('content') or ''),
            text=data.get('text') or None,
            attachment_refs=_as_list(data.get('attachments')),
            cc=data.get('cc'),
            bcc=data.get('bcc'),
        )


@dataclass
class PublishRequest:
    """Everything needed to publish one announcement over email"""
    credentials: Mapping[str, Any]
    runs: List[PublishRun]
    files: List[FileHandle] = field(default_factory=list)
    global_attachment_refs: List[Any] = field(default_factory=list)
    include_personalization: bool = False
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'PublishRequest':
        """
        Parse the JSON payload accepted by the Celery tasks::

            {"requestId": "...", "credentials": {...},
             "files": [{"id", "path", "filename", "name", "type"}],
             "globalAttachments": [...],
             "runs": [{"runId", "targets": {"mode": ...}, "subject", "html",
                       "text", "attachments", "cc", "bcc"}]}
        """
        runs = [PublishRun.from_dict(run, index) for index, run in enumerate(data.get('runs') or [])]
        return cls(
            credentials=dict(data.get('credentials') or {}),
            runs=runs,
            files=[FileHandle.from_dict(f) for f in data.get('files') or [] if isinstance(f, dict)],
            global_attachment_refs=_as_list(data.get('globalAttachments')),
            include_personalization=bool(data.get('includePersonalization', False)),
            request_id=str(data.get('requestId') or uuid.uuid4()),
        )


@dataclass
class RunReport:
    """Outcome of one run plus what was left out along the way"""
    run_id: str
    stage: PublishStage
    result: DeliveryResult
    recipients: List[str] = field(default_factory=list)
    attachments: List[str] = field(default_factory=list)
    inline_images: List[str] = field(default_factory=list)
    skipped: List[Skipped] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'runId': self.run_id,
            'stage': self.stage.value,
            'recipients': list(self.recipients),
            'attachments': list(self.attachments),
            'inlineImages': list(self.inline_images),
            'skipped': [
                {'reason': s.reason.value, 'ref': str(s.ref), 'detail': s.detail}
                for s in self.skipped
            ],
            **self.result.to_dict(),
        }


@dataclass
class PublishReport:
    """Aggregate over all runs of a request"""
    request_id: str
    result: DeliveryResult
    runs: List[RunReport] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.result.success

    def to_dict(self) -> Dict[str, Any]:
        return {
            'requestId': self.request_id,
            **self.result.to_dict(),
            'runs': [run.to_dict() for run in self.runs],
        }


def normalize_addresses(value: Union[str, Iterable[str], None]) -> Tuple[List[str], List[Skipped]]:
    """
    Split and validate a cc/bcc value.

    Accepts a comma or semicolon separated string or a list. Invalid
    addresses are dropped with a skip record; duplicates are dropped
    silently.
    """
    if not value:
        return [], []
    if isinstance(value, str):
        candidates = value.replace(';', ',').split(',')
    else:
        candidates = [str(v) for v in value if v is not None]

    addresses: List[str] = []
    skipped: List[Skipped] = []
    seen = set()
    for candidate in candidates:
        address = candidate.strip()
        if not address:
            continue
        try:
            validate_email(address, check_deliverability=False)
        except EmailNotValidError as e:
            logger.warning(f"Dropping invalid copy address {address!r}: {e}")
            skipped.append(Skipped(SkipReason.INVALID_VALUE, address, str(e)))
            continue
        if address.lower() in seen:
            continue
        seen.add(address.lower())
        addresses.append(address)
    return addresses, skipped


def aggregate_results(reports: List[RunReport]) -> DeliveryResult:
    """Successful only if every run succeeded; first failure wins the error"""
    if not reports:
        return DeliveryResult.failed(NO_RUNS_ERROR)

    post_ids = [r.result.post_id for r in reports if r.result.post_id]
    failures = [r.result for r in reports if not r.result.success]
    if failures:
        return DeliveryResult(
            success=False,
            post_id=', '.join(post_ids) or None,
            error=failures[0].error or 'unknown error',
        )
    return DeliveryResult.succeeded(post_id=', '.join(post_ids) or None)


class EmailPublisher:
    """
    Publish announcements by email.

    Args:
        store: Source of targets and groups
        transport: Outbound transport (SMTP by default)
        dispatcher: Prebuilt dispatcher; overrides ``transport``
        guard: Credential pre-flight check
        target_resolver: Resolver for the ``email`` channel
        attachment_resolver: Resolver confined to the allow-listed roots
        events: Step event sink
    """

    def __init__(self,
                 store: TargetStore,
                 transport: Optional[Transport] = None,
                 dispatcher: Optional[DeliveryDispatcher] = None,
                 guard: Optional[CredentialGuard] = None,
                 target_resolver: Optional[TargetResolver] = None,
                 attachment_resolver: Optional[AttachmentResolver] = None,
                 events: Optional[PublishEvents] = None):
        self.store = store
        self.dispatcher = dispatcher or DeliveryDispatcher(transport or SmtpTransport())
        self.guard = guard or CredentialGuard()
        self.target_resolver = target_resolver or TargetResolver(email_schema())
        self.attachment_resolver = attachment_resolver or AttachmentResolver()
        self.events = events or LoggingPublishEvents()

    async def publish(self, request: PublishRequest) -> PublishReport:
        logger.info(f"Publishing request {request.request_id} with {len(request.runs)} run(s)")

        if not request.runs:
            self.events.error(request.request_id, PublishStage.INIT.value, NO_RUNS_ERROR)
            return PublishReport(request.request_id, DeliveryResult.failed(NO_RUNS_ERROR))

        self.events.step_started(request.request_id, PublishStage.CREDENTIALS_CHECKED.value, 'Checking SMTP configuration')
        try:
            credentials = self.guard.check(request.credentials)
        except ConfigurationError as e:
            self.events.error(request.request_id, PublishStage.CREDENTIALS_CHECKED.value, str(e))
            failed = DeliveryResult.failed(str(e))
            return PublishReport(
                request.request_id,
                failed,
                runs=[RunReport(run.run_id, PublishStage.INIT, failed) for run in request.runs],
            )
        self.events.step_completed(request.request_id, PublishStage.CREDENTIALS_CHECKED.value, 'SMTP configuration complete')

        global_cache: Dict[str, AttachmentResolution] = {}
        reports = []
        for run in request.runs:
            reports.append(await self.publish_run(run, credentials, request, global_cache))

        result = aggregate_results(reports)
        if result.success:
            logger.info(f"Request {request.request_id} delivered: {result.post_id}")
        else:
            logger.error(f"Request {request.request_id} failed: {result.error}")
        return PublishReport(request.request_id, result, reports)

    async def publish_run(self,
                          run: PublishRun,
                          credentials: SmtpCredentials,
                          request: PublishRequest,
                          global_cache: Optional[Dict[str, AttachmentResolution]] = None) -> RunReport:
        """Run the pipeline for one run with already validated credentials"""
        report = RunReport(run.run_id, PublishStage.CREDENTIALS_CHECKED, DeliveryResult.failed('not dispatched'))
        global_cache = global_cache if global_cache is not None else {}

        try:
            addresses = self._resolve_targets(run, request, report)
            global_attachments = self._resolve_global(run, request, report, global_cache)
            markup, attachments = self._embed_and_merge(run, request, report, global_attachments)
        except PublishError as e:
            self.events.error(run.run_id, report.stage.value, str(e))
            report.result = DeliveryResult.failed(str(e))
            return report

        cc, cc_skipped = normalize_addresses(run.cc)
        bcc, bcc_skipped = normalize_addresses(run.bcc)
        report.skipped.extend(cc_skipped + bcc_skipped)

        step = PublishStage.DISPATCHED.value
        self.events.step_started(run.run_id, step, f"Sending to {len(addresses)} recipient(s)")
        started = time.monotonic()
        result = await self.dispatcher.dispatch(
            credentials,
            addresses,
            run.subject,
            markup,
            plain_text=run.text,
            attachments=attachments,
            cc=cc,
            bcc=bcc,
        )
        report.stage = PublishStage.DISPATCHED
        report.result = result
        if result.success:
            self.events.step_completed(run.run_id, step, f"Message sent: {result.post_id}", time.monotonic() - started)
        else:
            self.events.error(run.run_id, step, result.error or 'unknown error')
        return report

    def _resolve_targets(self, run: PublishRun, request: PublishRequest, report: RunReport) -> List[str]:
        step = PublishStage.TARGETS_RESOLVED.value
        self.events.step_started(run.run_id, step, 'Resolving recipients')
        started = time.monotonic()

        resolution = self.target_resolver.resolve(run.selection, self.store, request.include_personalization)
        report.skipped.extend(resolution.skipped)
        if not resolution.addresses:
            raise EmptyTargetSetError(self.target_resolver.channel)

        report.recipients = resolution.values()
        report.stage = PublishStage.TARGETS_RESOLVED
        self.events.step_completed(run.run_id, step, f"{len(resolution)} recipient(s)", time.monotonic() - started)
        return report.recipients

    def _resolve_global(self,
                        run: PublishRun,
                        request: PublishRequest,
                        report: RunReport,
                        global_cache: Dict[str, AttachmentResolution]) -> AttachmentResolution:
        step = PublishStage.ATTACHMENTS_RESOLVED.value
        self.events.step_started(run.run_id, step, 'Resolving global attachments')
        started = time.monotonic()

        # Shared by every run of the request; read at most once
        if 'global' not in global_cache:
            global_cache['global'] = self.attachment_resolver.resolve(
                request.global_attachment_refs, request.files, AttachmentScope.GLOBAL,
            )
        resolution = global_cache['global']
        report.skipped.extend(resolution.skipped)
        report.stage = PublishStage.ATTACHMENTS_RESOLVED
        self.events.step_completed(
            run.run_id, step, f"{len(resolution.attachments)} global attachment(s)", time.monotonic() - started,
        )
        return resolution

    def _embed_and_merge(self,
                         run: PublishRun,
                         request: PublishRequest,
                         report: RunReport,
                         global_resolution: AttachmentResolution) -> Tuple[str, list]:
        step = PublishStage.MARKUP_EMBEDDED.value
        self.events.step_started(run.run_id, step, 'Embedding inline images')
        started = time.monotonic()

        embedded = embed_inline_images(run.html, global_resolution.attachments)

        specific = self.attachment_resolver.resolve(run.attachment_refs, request.files, AttachmentScope.SPECIFIC)
        report.skipped.extend(specific.skipped)

        replaced = {a.filename for a in specific.attachments
                    if a.filename in embedded.matched and not is_embeddable_image(a.content_type)}
        if replaced:
            # The cid: reference would point at a part that is never sent; keep the original URLs
            logger.warning(f"Run {run.run_id}: non-image files replace inline images {sorted(replaced)}; not embedding them")
            embedded = embed_inline_images(
                run.html, [a for a in global_resolution.attachments if a.filename not in replaced],
            )

        # A run-specific file replacing a matched global image stays inline
        attachments = tag_content_ids(
            merge_attachments(embedded.attachments, specific.attachments), embedded.matched,
        )

        report.attachments = [a.filename for a in attachments]
        report.inline_images = sorted(embedded.matched)
        report.stage = PublishStage.MARKUP_EMBEDDED
        self.events.step_completed(
            run.run_id, step, f"{len(embedded.matched)} inline image(s), {len(attachments)} attachment(s)",
            time.monotonic() - started,
        )
        return embedded.markup, attachments
