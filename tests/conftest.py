"""
Shared fixtures for the bundler tests.

Network services are replaced by small fakes:
- ListRowSource: in-memory rows with the real pause/resume gate
- FakeFetcher: writes a fixed payload, optionally failing or waiting on a gate
- RecordingStore: keeps uploaded bytes and published documents in memory
- write_tool: a shell script standing in for an external helper
"""

import asyncio
import os
import stat
from typing import Optional

import pytest

from row_source import RowSource
from single_clip import FetchOutcome


class ListRowSource(RowSource):
    """Rows from a list, delivered in batches with a loop yield per batch."""

    def __init__(self, rows, batch_size: int = 10):
        super().__init__()
        self._rows = list(rows)
        self.batch_size = batch_size

    async def _batches(self):
        for i in range(0, len(self._rows), self.batch_size):
            await asyncio.sleep(0)
            yield self._rows[i:i + self.batch_size]


class FakeFetcher:
    def __init__(self, payload: bytes = b"ID3-fake-mp3", fail_keys=(), gate: Optional[asyncio.Event] = None,
                 raise_keys=()):
        self.payload = payload
        self.fail_keys = set(fail_keys)
        self.raise_keys = set(raise_keys)
        self.gate = gate
        self.calls: list[str] = []
        self.started = 0

    async def fetch(self, remote_path, file_path, key=""):
        self.started += 1
        self.calls.append(remote_path)
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        if key in self.raise_keys:
            raise RuntimeError("storage client exploded")
        if key in self.fail_keys:
            return FetchOutcome(key=key, remote_path=remote_path, file_path=file_path,
                                success=False, status_code=404, error="HTTP 404: Not Found",
                                attempts=1)
        with open(file_path, "wb") as f:
            f.write(self.payload)
        return FetchOutcome(key=key, remote_path=remote_path, file_path=file_path,
                            success=True, status_code=200,
                            bytes_downloaded=len(self.payload), attempts=1)


class RecordingStore:
    def __init__(self, fail_locales=()):
        self.fail_locales = set(fail_locales)
        self.objects: dict[str, bytes] = {}
        self.progress: dict[str, list[int]] = {}
        self.published: dict[str, dict] = {}

    def upload_stream(self, fileobj, key, callback=None):
        locale = os.path.basename(key).split(".")[0]
        if locale in self.fail_locales:
            raise RuntimeError(f"upload refused for {key}")
        data = bytearray()
        seen = self.progress.setdefault(key, [])
        while True:
            chunk = fileobj.read(64 * 1024)
            if not chunk:
                break
            data.extend(chunk)
            seen.append(len(chunk))
            if callback is not None:
                callback(len(chunk))
        self.objects[key] = bytes(data)

    def object_size(self, key):
        return len(self.objects[key])

    def put_json(self, key, payload):
        self.published[key] = payload
        return f"s3://recording/{key}"


def write_tool(tmp_path, body: str, name: str = "fake-tool") -> str:
    path = tmp_path / name
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


def make_row(locale: str, record_id, client_id: str = "user-1", **overrides):
    row = {
        "locale": locale,
        "id": record_id,
        "client_id": client_id,
        "sentence": f"sentence {record_id}",
        "path": f"{client_id}/{record_id}.mp3",
        "accent": "us",
        "age": "twenties",
        "gender": "female",
    }
    row.update(overrides)
    return row


@pytest.fixture
def rows():
    return [
        make_row("en", 1, "alice", accent="us"),
        make_row("en", 2, "bob", accent="england", age="thirties", gender="male"),
        make_row("fr", 3, "carol", accent="", age="", gender=""),
        make_row("en", 4, "alice", sentence="line one\rline two"),
        make_row("de", 5, "dave", gender="other"),
    ]
