"""
Evidence Ingestion
==================

Callers send evidence as plain strings. Each string is either:
- a Reference: an already stored object, recognised by an http(s) URL, or
- a Payload: inline base64 content (optionally a ``data:<mime>;base64,`` URL)
  that must be uploaded before a permanent URL exists.

Strings are classified into the tagged union below at the boundary so the rest
of the code never sniffs prefixes again. Payload sizes are checked before any
upload starts; uploads for one field run concurrently and the call waits for
all of them. The merged result lists references first, then new uploads, each
group in the caller's relative order.
"""

import asyncio
import base64
import binascii
import enum
import logging
import mimetypes
import re
import time
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from .config import Settings
from .errors import CaseValidationError, PayloadTooLargeError, UploadFailure, UploadTimeoutError
from .storage import BlobStore

logger = logging.getLogger(__name__)

REFERENCE_PATTERN = re.compile(r"^https?://", re.IGNORECASE)
DATA_URL_PATTERN = re.compile(
    r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[\w.+-]+=[\w.+-]+)*;base64,",
    re.IGNORECASE,
)


class EvidenceKind(str, enum.Enum):
    IMAGE = "image"
    DOCUMENT = "document"


@dataclass(frozen=True)
class EvidenceReference:
    """Already stored evidence"""
    url: str
    position: int = 0


@dataclass(frozen=True)
class EvidencePayload:
    """Inline evidence waiting to be uploaded"""
    data: bytes
    mime_type: Optional[str] = None
    position: int = 0

    @property
    def size_kb(self) -> float:
        return len(self.data) / 1024


Evidence = Union[EvidenceReference, EvidencePayload]


@dataclass(frozen=True)
class IngestPolicy:
    """Where a field's payloads go and how large each may be"""
    kind: EvidenceKind
    folder: str
    max_size_kb: int
    default_extension: str = ""

    @property
    def label(self) -> str:
        return "Image" if self.kind == EvidenceKind.IMAGE else "File"


def image_policy(settings: Settings) -> IngestPolicy:
    return IngestPolicy(EvidenceKind.IMAGE, "disciplinary-cases", settings.max_image_size_kb, ".jpg")


def photo_policy(settings: Settings) -> IngestPolicy:
    return IngestPolicy(
        EvidenceKind.IMAGE, "disciplinary-cases/leader-photos", settings.max_image_size_kb, ".jpg"
    )


def document_policy(settings: Settings) -> IngestPolicy:
    return IngestPolicy(EvidenceKind.DOCUMENT, "disciplinary-cases-docs", settings.max_document_size_kb)


# =============================================================================
# CLASSIFICATION
# =============================================================================

def is_reference(raw: str) -> bool:
    return bool(REFERENCE_PATTERN.match(raw))


def classify(raw: str, position: int = 0) -> Evidence:
    """Turn one caller-supplied string into a reference or a decoded payload."""
    if not isinstance(raw, str) or not raw.strip():
        raise CaseValidationError(f"Evidence item {position} is empty")

    raw = raw.strip()
    if is_reference(raw):
        return EvidenceReference(url=raw, position=position)

    mime_type = None
    body = raw
    match = DATA_URL_PATTERN.match(raw)
    if match:
        mime_type = (match.group("mime") or "").lower() or None
        body = raw[match.end():]

    body = "".join(body.split())
    try:
        data = base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError):
        raise CaseValidationError(
            f"Evidence item {position} is neither an http(s) URL nor valid base64 content"
        )
    if not data:
        raise CaseValidationError(f"Evidence item {position} has no content")

    return EvidencePayload(data=data, mime_type=mime_type, position=position)


def partition(raw_items: Optional[Iterable[str]]) -> Tuple[List[EvidenceReference], List[EvidencePayload]]:
    """Split raw strings into (references, payloads), each keeping input order."""
    references: List[EvidenceReference] = []
    payloads: List[EvidencePayload] = []
    for position, raw in enumerate(raw_items or []):
        item = classify(raw, position)
        if isinstance(item, EvidenceReference):
            references.append(item)
        else:
            payloads.append(item)
    return references, payloads


def check_size(payload: EvidencePayload, policy: IngestPolicy) -> None:
    if payload.size_kb > policy.max_size_kb:
        raise PayloadTooLargeError(
            f"{policy.label} size {payload.size_kb:.2f}KB exceeds maximum allowed size "
            f"of {policy.max_size_kb}KB"
        )


def extension_for(payload: EvidencePayload, policy: IngestPolicy) -> str:
    if payload.mime_type:
        guessed = mimetypes.guess_extension(payload.mime_type)
        if guessed:
            return ".jpg" if guessed in (".jpe", ".jpeg") else guessed
    return policy.default_extension


# =============================================================================
# INGESTOR
# =============================================================================

class EvidenceIngestor:
    """Resolves caller-supplied evidence strings into permanent URLs."""

    def __init__(self, blob_store: BlobStore, upload_timeout: float = 30.0):
        self.blob_store = blob_store
        self.upload_timeout = upload_timeout

    def prepare(
        self, raw_items: Optional[Sequence[str]], policy: IngestPolicy
    ) -> Tuple[List[EvidenceReference], List[EvidencePayload]]:
        """Classify and size-check everything before any upload starts."""
        references, payloads = partition(raw_items)
        for payload in payloads:
            check_size(payload, policy)
        return references, payloads

    async def ingest(
        self, raw_items: Optional[Sequence[str]], policy: IngestPolicy, name_prefix: str
    ) -> List[str]:
        """Return existing references followed by freshly uploaded URLs."""
        references, payloads = self.prepare(raw_items, policy)
        uploaded = await self.upload_payloads(payloads, policy, name_prefix)
        return [ref.url for ref in references] + uploaded

    async def upload_new(
        self, raw_items: Optional[Sequence[str]], policy: IngestPolicy, name_prefix: str
    ) -> List[str]:
        """Upload only the payloads; references are dropped."""
        _, payloads = self.prepare(raw_items, policy)
        return await self.upload_payloads(payloads, policy, name_prefix)

    async def ingest_single(
        self, raw: Optional[str], policy: IngestPolicy, name_prefix: str
    ) -> Optional[str]:
        if raw is None:
            return None
        urls = await self.ingest([raw], policy, name_prefix)
        return urls[0]

    async def upload_payloads(
        self, payloads: List[EvidencePayload], policy: IngestPolicy, name_prefix: str
    ) -> List[str]:
        if not payloads:
            return []

        stamp = int(time.time() * 1000)
        names = [
            f"{name_prefix}_{stamp}_{index}{extension_for(payload, policy)}"
            for index, payload in enumerate(payloads)
        ]
        results = await asyncio.gather(
            *(self._upload_one(payload, name, policy.folder) for payload, name in zip(payloads, names)),
            return_exceptions=True,
        )

        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result

        failures = [r for r in results if isinstance(r, Exception)]
        if failures:
            uploaded = [r for r in results if isinstance(r, str)]
            if uploaded:
                logger.warning(
                    "Upload batch into %s failed; %d blob(s) left orphaned: %s",
                    policy.folder, len(uploaded), uploaded,
                )
            first = failures[0]
            if isinstance(first, UploadFailure):
                raise first
            raise UploadFailure(f"Failed to upload {policy.label.lower()}s: {first}") from first

        logger.info(f"Uploaded {len(results)} {policy.kind.value} payload(s) into {policy.folder}")
        return list(results)

    async def _upload_one(self, payload: EvidencePayload, file_name: str, folder: str) -> str:
        try:
            return await asyncio.wait_for(
                self.blob_store.upload(payload.data, file_name, folder),
                timeout=self.upload_timeout,
            )
        except asyncio.TimeoutError as e:
            raise UploadTimeoutError(
                f"Upload of {file_name} timed out after {self.upload_timeout:g}s"
            ) from e
