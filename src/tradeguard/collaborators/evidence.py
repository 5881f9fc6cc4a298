"""Evidence storage — payment proofs and destination QR codes.

Evidence arrives as an inline payload (typically a base64 image). It is
pushed to content-addressed storage when possible and the order keeps
only the returned reference. If the store is missing, slow or failing,
the raw payload is kept inline so the trade can still proceed.

Values that are already references (``http...``, ``ipfs://``, CIDv0
``Qm...``, CIDv1 ``bafy...``) and payloads too short to be an image are
never re-uploaded.
"""

from __future__ import annotations

import abc
import hashlib
import logging
import threading
from typing import Optional

from tradeguard.collaborators.timeouts import call_with_timeout
from tradeguard.errors import CollaboratorError

logger = logging.getLogger(__name__)

MIN_UPLOAD_LENGTH = 100
_REFERENCE_PREFIXES = ("http", "ipfs://", "Qm", "bafy")
INLINE_MARKER = "[has_image]"


class EvidenceStore(abc.ABC):
    """Content-addressed evidence storage."""

    @abc.abstractmethod
    def upload(self, data: str, label: str) -> Optional[str]:
        """Store ``data`` and return a reference, or None if not stored."""


class InMemoryEvidenceStore(EvidenceStore):
    """Stores blobs in a dict under a fake CIDv1 derived from their hash."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.blobs: dict[str, str] = {}

    def upload(self, data: str, label: str) -> Optional[str]:
        digest = hashlib.sha256(data.encode("utf-8")).hexdigest()
        ref = f"ipfs://bafy{digest[:52]}"
        with self._lock:
            self.blobs[ref] = data
        return ref


def is_reference(value: str) -> bool:
    return value.startswith(_REFERENCE_PREFIXES)


def store_evidence(
    store: Optional[EvidenceStore],
    data: Optional[str],
    label: str,
    timeout_seconds: float,
) -> Optional[str]:
    """Return the value to record on the order for a piece of evidence."""
    if not data:
        return None
    if store is None or is_reference(data) or len(data) < MIN_UPLOAD_LENGTH:
        return data
    try:
        ref = call_with_timeout(
            store.upload, timeout_seconds, data, label, label="evidence.upload",
        )
    except CollaboratorError as exc:
        logger.warning("Evidence upload for %s failed, storing inline: %s", label, exc)
        return data
    if not ref:
        logger.warning("Evidence store returned no reference for %s, storing inline", label)
        return data
    logger.info("Uploaded evidence %s: %s", label, ref)
    return ref


def redact(value: Optional[str]) -> Optional[str]:
    """Hide inline payloads in listings; references are shown as-is."""
    if not value:
        return None
    if is_reference(value):
        return value
    return INLINE_MARKER
