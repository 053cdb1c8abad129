"""ID helpers."""

from __future__ import annotations

import secrets
import string

from study_pipeline.utils.time import now_ms

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def random_suffix(length: int = 9) -> str:
    return "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(length))


def upload_file_id(user_id: str) -> str:
    """Stable id for one upload attempt: user, epoch millis, random suffix."""
    return f"{user_id}_{now_ms()}_{random_suffix()}"


__all__ = ["random_suffix", "upload_file_id"]
