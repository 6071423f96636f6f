#!/usr/bin/env python3
"""
Common Voice Bundler Single Clip Module

Per-clip helpers used by bundle_clips.py:
- hash_client_id(): one-way anonymization of user identifiers
- clip_filename() / allocate_clip_path(): deterministic local layout
- ensure_clip_dir(): race-tolerant directory creation
- ClipFetcher: idempotent, streaming download of one clip object
"""

from __future__ import annotations

import asyncio
import hashlib
import os
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Optional, Tuple

import aiohttp

from clip_store import ClipStore


CHUNK_SIZE = 64 * 1024
PART_SUFFIX = ".part"


class ClipDirError(OSError):
    """Clip directory could not be created."""


# =============================================================================
# ANONYMIZATION AND LAYOUT
# =============================================================================

def hash_client_id(client_id: Any) -> str:
    """SHA-512 hex digest of a client identifier."""
    return hashlib.sha512(str(client_id).encode("utf-8")).hexdigest()


def clip_filename(locale: str, record_id: Any) -> str:
    return f"common_voice_{locale}_{record_id}.mp3"


def clips_dir(out_dir: str, locale: str) -> str:
    return os.path.join(out_dir, locale, "clips")


def allocate_clip_path(out_dir: str, locale: str, record_id: Any) -> str:
    """
    Local path for a clip. Pure: the same inputs map to the same path on
    every run, which is what makes reruns skip finished downloads.
    """
    return os.path.join(clips_dir(out_dir, locale), clip_filename(locale, record_id))


def ensure_clip_dir(path: str) -> str:
    """
    Create `path` and any missing parents.

    An existing directory is fine, including one another task created a
    moment ago. A leaf that exists as something other than a directory, or
    that we are not allowed to create, raises ClipDirError.
    """
    try:
        os.makedirs(path, exist_ok=True)
    except FileExistsError as e:
        raise ClipDirError(e.errno, f"Clip directory path exists and is not a directory: {path}") from e
    except PermissionError as e:
        raise ClipDirError(e.errno, f"Permission denied creating clip directory: {path}") from e
    except NotADirectoryError as e:
        raise ClipDirError(e.errno, f"A parent of the clip directory is not a directory: {path}") from e
    return path


# =============================================================================
# RETRY CLASSIFICATION
# =============================================================================

def _is_connection_error(msg: Any) -> bool:
    """Check if an error message indicates a connection-level failure."""
    if msg is None:
        return False
    s = str(msg).lower()
    patterns = [
        "connection reset by peer",
        "server disconnected",
        "connection refused",
        "cannot connect",
        "connection aborted",
        "connection error",
        "broken pipe",
        "timeout",
        "timed out",
    ]
    return any(p in s for p in patterns)


def is_retryable(status_code: Optional[int], error: Any) -> bool:
    """Determine if a fetch failure is worth another attempt."""
    if status_code == 429 or status_code == 408:
        return True
    if status_code is not None and status_code >= 500:
        return True
    return _is_connection_error(error)


# =============================================================================
# STREAMING DOWNLOAD
# =============================================================================

def _discard_part(part_path: str) -> None:
    try:
        os.remove(part_path)
    except FileNotFoundError:
        pass


async def stream_to_file(
    session: aiohttp.ClientSession,
    url: str,
    file_path: str,
    timeout: int
) -> Tuple[int, Optional[int], Optional[str]]:
    """
    Stream a GET response body into `file_path`.

    Bytes land in `<file_path>.part` and are renamed into place only after the
    body is complete, so an interrupted fetch never leaves a file that a
    rerun would take as finished.

    Returns:
        Tuple of (bytes_written, status_code, error)
    """
    part_path = file_path + PART_SUFFIX
    try:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
            if response.status != 200:
                try:
                    status_name = HTTPStatus(response.status).phrase
                except ValueError:
                    status_name = "Unknown"
                return 0, response.status, f"HTTP {response.status}: {status_name}"

            written = 0
            with open(part_path, "wb") as f:
                async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                    f.write(chunk)
                    written += len(chunk)

        os.replace(part_path, file_path)
        return written, 200, None

    except asyncio.CancelledError:
        _discard_part(part_path)
        raise
    except asyncio.TimeoutError:
        _discard_part(part_path)
        return 0, 408, "Request Timeout"
    except aiohttp.ClientError as e:
        _discard_part(part_path)
        return 0, None, f"Connection Error: {str(e)}"
    except OSError as e:
        _discard_part(part_path)
        return 0, None, f"Write Error: {str(e)}"


@dataclass
class FetchOutcome:
    """Terminal result of fetching one clip."""
    key: str
    remote_path: str
    file_path: str
    success: bool
    skipped: bool = False
    status_code: Optional[int] = None
    error: Optional[str] = None
    bytes_downloaded: int = 0
    attempts: int = 0


class ClipFetcher:
    """
    Fetches clip objects from the clip bucket into local files.

    Never raises for network or write failures; those come back as a failed
    FetchOutcome so callers can always account for the fetch as finished.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        store: ClipStore,
        timeout_sec: int = 30,
        max_retry_attempts: int = 3,
        retry_backoff_sec: float = 2.0,
    ):
        self.session = session
        self.store = store
        self.timeout_sec = timeout_sec
        self.max_retry_attempts = max(1, max_retry_attempts)
        self.retry_backoff_sec = retry_backoff_sec

    async def fetch(self, remote_path: str, file_path: str, key: str = "") -> FetchOutcome:
        if os.path.exists(file_path):
            return FetchOutcome(key=key, remote_path=remote_path, file_path=file_path,
                                success=True, skipped=True)

        url = self.store.presigned_url(remote_path)
        attempt = 0
        while True:
            attempt += 1
            written, status, err = await stream_to_file(self.session, url, file_path, self.timeout_sec)
            if err is None:
                return FetchOutcome(key=key, remote_path=remote_path, file_path=file_path,
                                    success=True, status_code=status,
                                    bytes_downloaded=written, attempts=attempt)

            if attempt >= self.max_retry_attempts or not is_retryable(status, err):
                return FetchOutcome(key=key, remote_path=remote_path, file_path=file_path,
                                    success=False, status_code=status, error=err,
                                    attempts=attempt)

            await asyncio.sleep(self.retry_backoff_sec * attempt)
