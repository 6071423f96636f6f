#!/usr/bin/env python3
"""
Common Voice Bundler Row Sources

Forward-only clip-metadata row streams with flow control. Rows are delivered
one at a time through async iteration; pause() holds delivery of the next row
until resume(). Both signals are idempotent, since fetch completions and
starts can race to send them.

- QueryRowSource: SQL query streamed from the database via SQLAlchemy
- FileRowSource: parquet/csv/tsv table loaded with Polars (offline runs)
"""

from __future__ import annotations

import asyncio
import os
from typing import Any, AsyncIterator, Optional

import polars as pl
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine


Row = dict[str, Any]


class RowSource:
    """Base class: subclasses yield batches, this class gates row delivery."""

    def __init__(self) -> None:
        self._running = asyncio.Event()
        self._running.set()
        self.pause_count = 0
        self.resume_count = 0

    @property
    def paused(self) -> bool:
        return not self._running.is_set()

    def pause(self) -> None:
        if not self.paused:
            self._running.clear()
            self.pause_count += 1

    def resume(self) -> None:
        if self.paused:
            self._running.set()
            self.resume_count += 1

    def _batches(self) -> AsyncIterator[list[Row]]:
        raise NotImplementedError

    async def rows(self) -> AsyncIterator[Row]:
        async for batch in self._batches():
            for row in batch:
                await self._running.wait()
                yield row

    def __aiter__(self) -> AsyncIterator[Row]:
        return self.rows()


# =============================================================================
# DATABASE SOURCE
# =============================================================================

def create_source_engine(db_url: str) -> Engine:
    return create_engine(
        db_url,
        pool_pre_ping=True,
        pool_recycle=1800,
    )


class QueryRowSource(RowSource):
    """
    Streams the rows of one SQL query with a server-side cursor.

    The blocking driver calls run in a worker thread so the event loop keeps
    serving downloads while the next batch is read.
    """

    def __init__(self, db_url: str, query: str, batch_size: int = 500,
                 engine: Optional[Engine] = None):
        super().__init__()
        self.db_url = db_url
        self.query = query
        self.batch_size = batch_size
        self._engine = engine

    async def _batches(self) -> AsyncIterator[list[Row]]:
        engine = self._engine or create_source_engine(self.db_url)
        conn = await asyncio.to_thread(engine.connect)
        try:
            streaming = conn.execution_options(stream_results=True)
            result = await asyncio.to_thread(streaming.execute, text(self.query))
            mappings = result.mappings()
            while True:
                batch = await asyncio.to_thread(mappings.fetchmany, self.batch_size)
                if not batch:
                    break
                yield [dict(r) for r in batch]
        finally:
            conn.close()
            if self._engine is None:
                engine.dispose()


def read_query_file(query_file: str) -> str:
    with open(query_file, "r", encoding="utf-8") as f:
        return f.read()


# =============================================================================
# FILE SOURCE
# =============================================================================

def load_input_file(file_path: str, file_format: Optional[str] = None) -> pl.DataFrame:
    """
    Load a clip-metadata table with Polars.

    Args:
        file_path: Path to input file
        file_format: Optional format hint ('parquet', 'csv', 'tsv').
                    If None, inferred from file extension

    Returns:
        Polars DataFrame. Text formats are read with every column as a
        string so ids are kept exactly as written.

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If format is unsupported
    """
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"Input file {file_path} not found")

    if file_format is None:
        if file_path.endswith(".parquet"):
            file_format = "parquet"
        elif file_path.endswith(".csv"):
            file_format = "csv"
        elif file_path.endswith(".tsv"):
            file_format = "tsv"
        else:
            raise ValueError(f"Could not determine file format from extension: {file_path}")

    if file_format == "parquet":
        return pl.read_parquet(file_path)
    elif file_format == "csv":
        return pl.read_csv(file_path, infer_schema_length=0)
    elif file_format == "tsv":
        return pl.read_csv(file_path, separator="\t", quote_char=None, infer_schema_length=0)
    else:
        raise ValueError(f"Unsupported file format: {file_format}")


class FileRowSource(RowSource):
    """Rows from a local table, delivered in file order."""

    def __init__(self, file_path: str, file_format: Optional[str] = None, batch_size: int = 500):
        super().__init__()
        self.file_path = file_path
        self.file_format = file_format
        self.batch_size = batch_size

    async def _batches(self) -> AsyncIterator[list[Row]]:
        df = load_input_file(self.file_path, self.file_format)
        print(f"[Load] {df.height} rows from {self.file_path}")
        for frame in df.iter_slices(n_rows=self.batch_size):
            yield frame.to_dicts()
