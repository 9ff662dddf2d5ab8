"""Content digests used to detect unchanged chunks."""

import hashlib


def content_hash(content: str) -> str:
    """SHA-256 hex digest of the UTF-8 encoded chunk content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()
