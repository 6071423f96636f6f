#!/usr/bin/env python3
"""
Common Voice Bundler

Streams clip-metadata rows, anonymizes and aggregates them, downloads every
referenced clip into <out>/<locale>/clips/, then sums durations, counts
corpus buckets, uploads one tar.gz bundle per locale and publishes stats.json.

Flow control:
    rows ──► RowAggregator ──► TsvWriter
                  │
                  └──► ClipFetcher tasks ◄── BackpressureController
                                                  │ pause()/resume()
                                                  ▼
                                              RowSource

The row source is paused once more than `high_watermark` fetches are in
flight and resumed when fewer than `low_watermark` remain. The download stage
completes once the source has ended and the last fetch has drained, whichever
of the two happens last.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol, TextIO

import aiohttp
from tqdm.asyncio import tqdm

from clip_store import ClipStore
from corpus_stats import (
    CORPORA_TOOL,
    DURATION_TOOL,
    LocaleStats,
    calculate_aggregate_stats,
    count_buckets,
    format_locale_stats,
    merge_locale_stats,
    print_console_report,
    run_corpora,
    sum_durations,
    write_stats_json,
)
from row_source import FileRowSource, QueryRowSource, RowSource, read_query_file
from single_clip import (
    ClipFetcher,
    FetchOutcome,
    allocate_clip_path,
    clip_filename,
    ensure_clip_dir,
    hash_client_id,
)
from upload_bundles import BundleResult, archive_and_upload


TSV_NAME = "clips.tsv"


def _monotonic() -> float:
    """Monotonic time for duration measurements."""
    return time.monotonic()


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class Config:
    """Main application configuration."""
    out_dir: str
    release_name: str

    # Row source: a database query, or a local table for offline runs
    db_url: Optional[str] = None
    query_file: Optional[str] = None
    input_path: Optional[str] = None
    input_format: Optional[str] = None

    clip_bucket: Optional[str] = None
    clip_region: Optional[str] = None
    out_bucket: Optional[str] = None
    out_region: str = "us-west-2"

    # Backpressure
    high_watermark: int = 50
    low_watermark: int = 25

    timeout_sec: int = 30
    max_retry_attempts: int = 3
    retry_backoff_sec: float = 2.0

    # Stages
    stats_only: bool = False
    skip_corpora: bool = True
    run_corpora: bool = False
    skip_bundling: bool = False
    no_publish: bool = False

    duration_tool: str = DURATION_TOOL
    corpora_tool: str = CORPORA_TOOL

    @property
    def tsv_path(self) -> str:
        return os.path.join(self.out_dir, TSV_NAME)

    @property
    def bundle_url_template(self) -> Optional[str]:
        if not self.out_bucket:
            return None
        return f"https://{self.out_bucket}.s3.amazonaws.com/{self.release_name}/{{locale}}.tar.gz"


def _config_from_json(path: str) -> Config:
    with Path(path).open("r") as f:
        data = json.load(f)

    run_corpora = bool(data.get("run_corpora", False))
    return Config(
        out_dir=data.get("out_dir", ""),
        release_name=data.get("release_name", ""),
        db_url=data.get("db_url"),
        query_file=data.get("query_file"),
        input_path=data.get("input"),
        input_format=data.get("input_format"),
        clip_bucket=data.get("clip_bucket"),
        clip_region=data.get("clip_region"),
        out_bucket=data.get("out_bucket"),
        out_region=data.get("out_region", "us-west-2"),
        high_watermark=int(data.get("high_watermark", 50)),
        low_watermark=int(data.get("low_watermark", 25)),
        timeout_sec=int(data.get("timeout", 30)),
        max_retry_attempts=int(data.get("max_retry_attempts", 3)),
        retry_backoff_sec=float(data.get("retry_backoff_sec", 2.0)),
        stats_only=bool(data.get("stats_only", False)),
        skip_corpora=bool(data.get("skip_corpora", not run_corpora)),
        run_corpora=run_corpora,
        skip_bundling=bool(data.get("skip_bundling", False)),
        no_publish=bool(data.get("no_publish", False)),
        duration_tool=data.get("duration_tool", DURATION_TOOL),
        corpora_tool=data.get("corpora_tool", CORPORA_TOOL),
    )


def validate_config(cfg: Config) -> list[str]:
    """Return a list of problems; empty when the config is usable."""
    problems = []
    if not cfg.out_dir:
        problems.append("--out is required")
    if not cfg.release_name:
        problems.append("--release is required")
    if not cfg.input_path and not (cfg.db_url and cfg.query_file):
        problems.append("either --input or both --db_url and --query_file are required")
    if not cfg.stats_only and not cfg.clip_bucket:
        problems.append("--clip_bucket is required unless --stats_only is set")
    if not (cfg.skip_bundling and cfg.no_publish) and not cfg.out_bucket:
        problems.append("--out_bucket is required unless --skip_bundling and --no_publish are set")
    if cfg.stats_only and cfg.run_corpora:
        problems.append("--run_corpora needs clips.tsv, which --stats_only does not write")
    if not 1 <= cfg.low_watermark < cfg.high_watermark:
        problems.append("watermarks must satisfy 1 <= low_watermark < high_watermark")
    return problems


def parse_args(argv: Optional[list[str]] = None) -> Config:
    """Parse command line arguments or JSON config file."""
    p = argparse.ArgumentParser(
        description="Common Voice Bundler: download, aggregate and bundle a clip release",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python bundle_clips.py --config release.json
  python bundle_clips.py --db_url mysql+pymysql://u:p@host/voice --query_file queries/clips.sql \\
      --clip_bucket voice-clips --out_bucket voice-releases --release cv-corpus-5 --out out/
  python bundle_clips.py --input clips.parquet --out out/ --release test --stats_only \\
      --skip_bundling --no_publish
"""
    )

    p.add_argument("--config", type=str, help="Path to JSON config file")

    # Source
    p.add_argument("--db_url", type=str, default=None, help="SQLAlchemy database URL")
    p.add_argument("--query_file", type=str, default=None, help="File holding the clip query")
    p.add_argument("--input", dest="input_path", type=str, default=None,
                   help="Local parquet/csv/tsv table used instead of the database")
    p.add_argument("--input_format", type=str, default=None, choices=["parquet", "csv", "tsv"])

    # Storage
    p.add_argument("--clip_bucket", type=str, default=None)
    p.add_argument("--clip_region", type=str, default=None)
    p.add_argument("--out_bucket", type=str, default=None)
    p.add_argument("--out_region", type=str, default="us-west-2")
    p.add_argument("--release", dest="release_name", type=str, default=None)
    p.add_argument("--out", dest="out_dir", type=str, default=None, help="Local output folder")

    # Download settings
    p.add_argument("--high_watermark", type=int, default=50)
    p.add_argument("--low_watermark", type=int, default=25)
    p.add_argument("--timeout", dest="timeout_sec", type=int, default=30)
    p.add_argument("--max_retry_attempts", type=int, default=3)
    p.add_argument("--retry_backoff_sec", type=float, default=2.0)

    # Stages
    p.add_argument("--stats_only", action="store_true", help="Aggregate only; no TSV, no downloads")
    p.add_argument("--count_buckets", action="store_true",
                   help="Count corpus bucket files produced by the corpus tool")
    p.add_argument("--run_corpora", action="store_true",
                   help="Run the corpus tool before counting buckets (implies --count_buckets)")
    p.add_argument("--skip_bundling", action="store_true")
    p.add_argument("--no_publish", action="store_true")
    p.add_argument("--duration_tool", type=str, default=DURATION_TOOL)
    p.add_argument("--corpora_tool", type=str, default=CORPORA_TOOL)

    args = p.parse_args(argv)

    if args.config:
        cfg = _config_from_json(args.config)
    else:
        cfg = Config(
            out_dir=args.out_dir or "",
            release_name=args.release_name or "",
            db_url=args.db_url,
            query_file=args.query_file,
            input_path=args.input_path,
            input_format=args.input_format,
            clip_bucket=args.clip_bucket,
            clip_region=args.clip_region,
            out_bucket=args.out_bucket,
            out_region=args.out_region,
            high_watermark=args.high_watermark,
            low_watermark=args.low_watermark,
            timeout_sec=args.timeout_sec,
            max_retry_attempts=args.max_retry_attempts,
            retry_backoff_sec=args.retry_backoff_sec,
            stats_only=args.stats_only,
            skip_corpora=not (args.count_buckets or args.run_corpora),
            run_corpora=args.run_corpora,
            skip_bundling=args.skip_bundling,
            no_publish=args.no_publish,
            duration_tool=args.duration_tool,
            corpora_tool=args.corpora_tool,
        )

    problems = validate_config(cfg)
    if problems:
        p.error("; ".join(problems))

    return cfg


# =============================================================================
# FLOW CONTROL
# =============================================================================

class Pausable(Protocol):
    paused: bool

    def pause(self) -> None: ...

    def resume(self) -> None: ...


class BackpressureController:
    """
    Hysteresis gate between in-flight fetches and the row source.

    With the defaults, the 51st concurrent fetch pauses the source and it
    resumes once in-flight drops to 24.
    """

    def __init__(self, source: Pausable, high_watermark: int = 50, low_watermark: int = 25):
        if not 1 <= low_watermark < high_watermark:
            raise ValueError(
                f"watermarks must satisfy 1 <= low_watermark ({low_watermark}) "
                f"< high_watermark ({high_watermark})"
            )
        self.source = source
        self.high_watermark = high_watermark
        self.low_watermark = low_watermark
        self.in_flight = 0
        self.peak_in_flight = 0

    def started(self) -> None:
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        if self.in_flight > self.high_watermark:
            self.source.pause()

    def finished(self) -> None:
        if self.in_flight == 0:
            raise RuntimeError("fetch finished with no fetch in flight")
        self.in_flight -= 1
        if self.source.paused and self.in_flight < self.low_watermark:
            self.source.resume()


class CompletionCoordinator:
    """Signals once, when the source has ended and nothing is in flight."""

    def __init__(self, controller: BackpressureController):
        self.controller = controller
        self.source_ended = False
        self.resolutions = 0
        self._done = asyncio.Event()

    def end_source(self) -> None:
        self.source_ended = True
        self.check()

    def check(self) -> bool:
        if self._done.is_set():
            return False
        if self.source_ended and self.controller.in_flight == 0:
            self.resolutions += 1
            self._done.set()
            return True
        return False

    @property
    def done(self) -> bool:
        return self._done.is_set()

    async def wait(self) -> None:
        await self._done.wait()


# =============================================================================
# ROW AGGREGATION AND TSV OUTPUT
# =============================================================================

def sanitize_row(row: dict[str, Any]) -> dict[str, Any]:
    """Projection of a source row that is safe to persist."""
    sentence = row.get("sentence")
    return {
        **row,
        "sentence": sentence.replace("\r", " ") if isinstance(sentence, str) else sentence,
        "client_id": hash_client_id(row["client_id"]),
        "path": clip_filename(row["locale"], row["id"]),
    }


class RowAggregator:
    """Per-locale tallies over the row stream. Sole owner of the stats map."""

    def __init__(self) -> None:
        self.stats: dict[str, LocaleStats] = {}
        self.rows_processed = 0

    def consume(self, row: dict[str, Any]) -> dict[str, Any]:
        self.rows_processed += 1
        locale_stats = self.stats.get(row["locale"])
        if locale_stats is None:
            locale_stats = self.stats[row["locale"]] = LocaleStats()
        locale_stats.add(row)
        return sanitize_row(row)


class TsvWriter:
    """Tab-separated, unquoted, header taken from the first row written."""

    def __init__(self, path: str, columns: Optional[list[str]] = None):
        self.path = path
        self.columns = list(columns) if columns else None
        self.rows_written = 0
        self._f: Optional[TextIO] = open(path, "w", encoding="utf-8", newline="")
        if self.columns:
            self._write_line(self.columns)

    def _write_line(self, values: list[Any]) -> None:
        self._f.write("\t".join("" if v is None else str(v) for v in values) + "\n")

    def write(self, row: dict[str, Any]) -> None:
        if self.columns is None:
            self.columns = list(row.keys())
            self._write_line(self.columns)
        self._write_line([row.get(c) for c in self.columns])
        self.rows_written += 1

    def close(self) -> None:
        if self._f is not None:
            self._f.close()
            self._f = None

    def __enter__(self) -> "TsvWriter":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


# =============================================================================
# DOWNLOAD STAGE
# =============================================================================

class Fetcher(Protocol):
    async def fetch(self, remote_path: str, file_path: str, key: str = "") -> FetchOutcome: ...


@dataclass
class PipelineResult:
    """Outcome of the row/download stage."""
    stats: dict[str, LocaleStats]
    rows_processed: int = 0
    clips_downloaded: int = 0
    clips_skipped: int = 0
    failures: list[FetchOutcome] = field(default_factory=list)
    peak_in_flight: int = 0
    resolutions: int = 0
    elapsed_sec: float = 0.0


async def process_and_download_clips(
    cfg: Config,
    source: RowSource,
    fetcher: Optional[Fetcher],
) -> PipelineResult:
    """
    Consume every row once, write clips.tsv and fan out clip fetches.

    Returns after the source has ended and every started fetch has reached
    its terminal outcome.
    """
    aggregator = RowAggregator()
    controller = BackpressureController(source, cfg.high_watermark, cfg.low_watermark)
    coordinator = CompletionCoordinator(controller)
    result = PipelineResult(stats=aggregator.stats)

    pending: set[asyncio.Task] = set()
    ready_dirs: set[str] = set()

    row_bar = tqdm(desc="Rows", unit="row")
    clip_bar = tqdm(desc="Clips", unit="clip")
    tsv = None if cfg.stats_only else TsvWriter(cfg.tsv_path)

    async def run_fetch(remote_path: str, file_path: str, key: str) -> None:
        try:
            outcome = await fetcher.fetch(remote_path, file_path, key)
        except Exception as e:
            outcome = FetchOutcome(key=key, remote_path=remote_path, file_path=file_path,
                                   success=False, error=f"Error: {str(e)}", attempts=1)
        controller.finished()

        if outcome.skipped:
            result.clips_skipped += 1
        elif outcome.success:
            result.clips_downloaded += 1
            clip_bar.update(1)
        else:
            result.failures.append(outcome)
            print(f"\n[Fetch] {os.path.basename(outcome.file_path)} failed after {outcome.attempts} attempt(s): "
                  f"{outcome.error}", file=sys.stderr)

        coordinator.check()

    start = _monotonic()
    try:
        async for row in source:
            sanitized = aggregator.consume(row)
            row_bar.update(1)

            if tsv is None:
                continue
            tsv.write(sanitized)

            file_path = allocate_clip_path(cfg.out_dir, row["locale"], row["id"])
            if os.path.exists(file_path):
                result.clips_skipped += 1
                continue

            clip_dir = os.path.dirname(file_path)
            if clip_dir not in ready_dirs:
                ensure_clip_dir(clip_dir)
                ready_dirs.add(clip_dir)

            controller.started()
            task = asyncio.create_task(run_fetch(row["path"], file_path, str(row["id"])))
            pending.add(task)
            task.add_done_callback(pending.discard)

        if tsv is not None:
            tsv.close()
        coordinator.end_source()
        await coordinator.wait()
    finally:
        # Only non-empty when the row loop raised; fetches still running are abandoned.
        leftover = [task for task in pending if not task.done()]
        for task in leftover:
            task.cancel()
        if leftover:
            await asyncio.gather(*leftover, return_exceptions=True)
        if tsv is not None:
            tsv.close()
        row_bar.close()
        clip_bar.close()

    result.rows_processed = aggregator.rows_processed
    result.peak_in_flight = controller.peak_in_flight
    result.resolutions = coordinator.resolutions
    result.elapsed_sec = _monotonic() - start
    return result


def print_download_summary(result: PipelineResult) -> None:
    err_counter = Counter((o.status_code, o.error) for o in result.failures)

    print("\n" + "=" * 72)
    print("DOWNLOAD SUMMARY")
    print("=" * 72)
    print(f"Rows processed:        {result.rows_processed}")
    print(f"Locales:               {len(result.stats)}")
    print(f"Clips downloaded:      {result.clips_downloaded}")
    print(f"Clips already present: {result.clips_skipped}")
    print(f"Clips failed:          {len(result.failures)}")
    print(f"Peak in flight:        {result.peak_in_flight}")
    print(f"Elapsed time:          {result.elapsed_sec:.2f}s")
    for (status_code, error), count in err_counter.most_common():
        print(f"  {count:>6}  {status_code}  {error}")
    print("=" * 72)


# =============================================================================
# MAIN
# =============================================================================

def build_row_source(cfg: Config) -> RowSource:
    if cfg.input_path:
        return FileRowSource(cfg.input_path, cfg.input_format)
    return QueryRowSource(cfg.db_url, read_query_file(cfg.query_file))


async def download_stage(cfg: Config, source: RowSource) -> PipelineResult:
    if cfg.stats_only:
        return await process_and_download_clips(cfg, source, None)

    connector = aiohttp.TCPConnector(
        limit=max(50, cfg.high_watermark * 2),
        ttl_dns_cache=300,
        use_dns_cache=True,
    )
    async with aiohttp.ClientSession(
        connector=connector,
        headers={"User-Agent": "common-voice-bundler/1.0"},
    ) as session:
        fetcher = ClipFetcher(
            session,
            ClipStore(cfg.clip_bucket, cfg.clip_region),
            timeout_sec=cfg.timeout_sec,
            max_retry_attempts=cfg.max_retry_attempts,
            retry_backoff_sec=cfg.retry_backoff_sec,
        )
        return await process_and_download_clips(cfg, source, fetcher)


async def run(cfg: Config) -> int:
    print("=" * 72)
    print(f"Common Voice Bundler | release {cfg.release_name}")
    print("=" * 72)

    os.makedirs(cfg.out_dir, exist_ok=True)
    source = build_row_source(cfg)

    result = await download_stage(cfg, source)
    print_download_summary(result)

    durations = await sum_durations(cfg.out_dir, cfg.duration_tool)

    buckets = None
    if not cfg.skip_corpora:
        if cfg.run_corpora:
            await run_corpora(cfg.tsv_path, cfg.out_dir, cfg.corpora_tool)
        buckets = count_buckets(cfg.out_dir)

    out_store = None
    if not (cfg.skip_bundling and cfg.no_publish):
        out_store = ClipStore(cfg.out_bucket, cfg.out_region)

    bundles = BundleResult()
    if not cfg.skip_bundling:
        bundles = await archive_and_upload(out_store, cfg.out_dir, cfg.release_name)

    stats = calculate_aggregate_stats(
        merge_locale_stats(format_locale_stats(result.stats), durations, buckets, bundles.sizes),
        cfg.bundle_url_template,
    )
    print_console_report(stats)
    print(f"[Stats] Written: {write_stats_json(cfg.out_dir, stats)}")

    if not cfg.no_publish:
        location = await asyncio.to_thread(out_store.put_json, f"{cfg.release_name}/stats.json", stats)
        print(f"[Stats] Published: {location}")

    if bundles.errors:
        print(f"[Bundle] {len(bundles.errors)} locale upload(s) failed:", file=sys.stderr)
        for locale, error in bundles.errors:
            print(f"  {locale}: {error}", file=sys.stderr)

    return 0


def main(argv: Optional[list[str]] = None) -> int:
    cfg = parse_args(argv)
    try:
        return asyncio.run(run(cfg))
    except KeyboardInterrupt:
        print("\n[Shutdown] Interrupted.", file=sys.stderr)
        return 130
    except Exception as e:
        print(f"\n[Error] {type(e).__name__}: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
