#!/usr/bin/env python3
"""
Common Voice Bundler Archive Upload

Streams each locale directory as <release>/<locale>.tar.gz into the release
bucket. The tar+gzip stream is written into an OS pipe by one thread while
the multipart upload reads the other end, so no archive file is ever
materialized locally. Locales are handled one at a time; a failed locale is
recorded and the next one proceeds.
"""

from __future__ import annotations

import asyncio
import os
import sys
import tarfile
import threading
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Callable, Optional

from tqdm import tqdm

from clip_store import ClipStore
from corpus_stats import get_locale_dirs
from single_clip import PART_SUFFIX


class ArchiveError(RuntimeError):
    """Building the archive stream failed."""


@dataclass
class BundleResult:
    """Sizes of uploaded bundles and the locales that failed."""
    sizes: dict[str, dict[str, Any]] = field(default_factory=dict)
    errors: list[tuple[str, str]] = field(default_factory=list)


def archive_key(release_name: str, locale: str) -> str:
    return f"{release_name}/{locale}.tar.gz"


def _skip_partial(info: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
    return None if info.name.endswith(PART_SUFFIX) else info


def write_archive(locale_dir: str, fileobj: BinaryIO) -> None:
    """Write a gzip tar of locale_dir's entries, named relative to locale_dir.

    Unfinished downloads (*.part) are left out.
    """
    with tarfile.open(fileobj=fileobj, mode="w|gz") as tf:
        for name in sorted(os.listdir(locale_dir)):
            tf.add(os.path.join(locale_dir, name), arcname=name, filter=_skip_partial)


class _ArchiveReader:
    """Read end of the archive pipe. A failed producer surfaces as an error
    at end of stream, so the upload is abandoned instead of completing with
    a truncated archive."""

    def __init__(self, reader: BinaryIO, errors: list[BaseException]):
        self._reader = reader
        self._errors = errors

    def read(self, size: int = -1) -> bytes:
        data = self._reader.read(size)
        if not data and self._errors:
            raise ArchiveError(f"archive stream failed: {self._errors[0]}") from self._errors[0]
        return data

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False


def stream_locale_archive(
    store: ClipStore,
    locale_dir: str,
    key: str,
    progress: Optional[Callable[[int], None]] = None,
) -> None:
    """Pipe a locale archive straight into an upload. Blocking."""
    read_fd, write_fd = os.pipe()
    reader = os.fdopen(read_fd, "rb")
    writer = os.fdopen(write_fd, "wb")
    archive_errors: list[BaseException] = []

    def produce() -> None:
        try:
            write_archive(locale_dir, writer)
        except BaseException as e:
            archive_errors.append(e)
        finally:
            try:
                writer.close()
            except BrokenPipeError as e:
                archive_errors.append(e)

    producer = threading.Thread(target=produce, name=f"archive-{os.path.basename(locale_dir)}", daemon=True)
    producer.start()
    try:
        store.upload_stream(_ArchiveReader(reader, archive_errors), key, callback=progress)
    finally:
        # Unblocks the producer if the upload stopped reading early.
        reader.close()
        producer.join()

    if archive_errors:
        raise ArchiveError(f"Archiving {locale_dir} failed: {archive_errors[0]}") from archive_errors[0]


def upload_locale(store: ClipStore, out_dir: str, release_name: str, locale: str) -> int:
    """Archive and upload one locale, then return the uploaded object's size."""
    key = archive_key(release_name, locale)
    locale_dir = os.path.join(out_dir, locale)
    with tqdm(desc=f"Uploading {locale}", unit="B", unit_scale=True, unit_divisor=1024) as pbar:
        stream_locale_archive(store, locale_dir, key, progress=pbar.update)
    return store.object_size(key)


async def archive_and_upload(store: ClipStore, out_dir: str, release_name: str) -> BundleResult:
    """Upload every locale bundle, sequentially, collecting per-locale failures."""
    result = BundleResult()
    for locale in get_locale_dirs(out_dir):
        print(f"[Bundle] archiving & uploading {archive_key(release_name, locale)}")
        try:
            size = await asyncio.to_thread(upload_locale, store, out_dir, release_name, locale)
        except Exception as e:
            print(f"[Bundle] {locale} failed: {e}", file=sys.stderr)
            result.errors.append((locale, str(e)))
            continue
        result.sizes[locale] = {"size": size}
        print(f"[Bundle] {locale}: {size} bytes")
    return result
