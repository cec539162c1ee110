"""Fingerprinting functions for idempotency and finalization.

Fingerprint rule: a caller-supplied idempotency key takes precedence; without
one the fingerprint falls back to a BLAKE2b hash of the source file content.
Either way the account identifier is part of the hashed document, so two
accounts uploading the same file never collide.
"""

import hashlib
import json
import os
from typing import Any, Optional


def compute_content_hash(file_path: str) -> str:
    """Compute BLAKE2b hash of the full file content.

    Args:
        file_path: Path to the source video

    Returns:
        BLAKE2b hex digest (128 chars)

    Raises:
        FileNotFoundError: If the file doesn't exist
        PermissionError: If the file isn't readable
        ValueError: If the file is empty
    """
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"Video file not found: {file_path}")

    if not os.access(file_path, os.R_OK):
        raise PermissionError(f"Cannot read video file: {file_path}")

    if os.path.getsize(file_path) == 0:
        raise ValueError(f"Video file is empty: {file_path}")

    hasher = hashlib.blake2b()

    with open(file_path, 'rb') as f:
        # Read in 64KB chunks for memory efficiency
        for chunk in iter(lambda: f.read(65536), b''):
            hasher.update(chunk)

    return hasher.hexdigest()


def compute_fingerprint(
    account_id: str,
    content_hash: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> str:
    """Derive the idempotency fingerprint of a submission.

    Args:
        account_id: Account the video is published to
        content_hash: BLAKE2b of the source file (used when no key is given)
        idempotency_key: Caller-supplied key (takes precedence)

    Returns:
        SHA-256 hex digest

    Raises:
        ValueError: If neither a key nor a content hash is available
    """
    if idempotency_key:
        document = {"account": account_id, "key": idempotency_key}
    elif content_hash:
        document = {"account": account_id, "content": content_hash}
    else:
        raise ValueError("Fingerprint needs an idempotency key or a content hash")

    return compute_document_hash(document)


def compute_document_hash(document: Any) -> str:
    """Compute deterministic hash of a JSON-serializable document.

    Works with both Pydantic models and dicts. Keys are sorted, so the same
    content always produces the same hash regardless of insertion order.
    """
    if hasattr(document, 'model_dump'):
        document = document.model_dump(mode="json")

    serialized = json.dumps(document, sort_keys=True, indent=None, default=str)

    return hashlib.sha256(serialized.encode()).hexdigest()


def compute_metadata_hash(metadata: Any) -> str:
    """Hash of the metadata applied remotely; equal hashes make re-application a no-op."""
    return compute_document_hash(metadata)
