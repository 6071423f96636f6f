"""
Tests for the row/download stage: aggregation, clips.tsv output, idempotent
reruns, failure handling and bounded fan-out.
"""

import asyncio
import os

import polars as pl
import pytest

from bundle_clips import (
    Config,
    RowAggregator,
    TsvWriter,
    process_and_download_clips,
    sanitize_row,
)
from conftest import FakeFetcher, ListRowSource, make_row
from single_clip import ClipDirError, allocate_clip_path, hash_client_id


def make_config(tmp_path, **overrides) -> Config:
    values = dict(out_dir=str(tmp_path), release_name="test", input_path="unused.tsv")
    values.update(overrides)
    return Config(**values)


def run_pipeline(cfg, rows, fetcher, batch_size=10):
    source = ListRowSource(rows, batch_size=batch_size)
    return asyncio.run(process_and_download_clips(cfg, source, fetcher)), source


class TestRowAggregator:

    def test_counts_splits_and_users(self, rows):
        agg = RowAggregator()
        for row in rows:
            agg.consume(row)

        assert agg.rows_processed == len(rows)
        assert sum(s.clips for s in agg.stats.values()) == len(rows)

        en = agg.stats["en"]
        assert en.clips == 3
        assert en.splits["accent"] == {"us": 2, "england": 1}
        assert en.splits["gender"] == {"female": 2, "male": 1}
        assert en.users == {"alice", "bob"}

    def test_only_fixed_categories_are_split(self):
        agg = RowAggregator()
        agg.consume(make_row("en", 1, bucket="validated", up_votes=3))
        assert set(agg.stats["en"].splits) == {"accent", "age", "gender"}

    def test_sanitized_row(self):
        row = make_row("en", 7, "secret-user", sentence="a\rb\r c")
        clean = sanitize_row(row)

        assert clean["client_id"] == hash_client_id("secret-user")
        assert clean["path"] == "common_voice_en_7.mp3"
        assert clean["sentence"] == "a b  c"
        assert clean["accent"] == row["accent"]
        assert row["client_id"] == "secret-user"


class TestTsvWriter:

    def test_header_from_first_row_and_nulls(self, tmp_path):
        path = tmp_path / "out.tsv"
        with TsvWriter(str(path)) as w:
            w.write({"a": 1, "b": None, "c": "x y"})
            w.write({"a": 2, "b": "z", "c": ""})

        assert path.read_text(encoding="utf-8") == "a\tb\tc\n1\t\tx y\n2\tz\t\n"

    def test_explicit_columns(self, tmp_path):
        path = tmp_path / "out.tsv"
        w = TsvWriter(str(path), columns=["b", "a"])
        w.write({"a": 1, "b": 2})
        w.close()
        w.close()
        assert path.read_text(encoding="utf-8").splitlines() == ["b\ta", "2\t1"]


class TestProcessAndDownload:

    def test_end_to_end(self, tmp_path, rows):
        cfg = make_config(tmp_path)
        fetcher = FakeFetcher()
        result, _ = run_pipeline(cfg, rows, fetcher)

        assert result.rows_processed == len(rows)
        assert result.clips_downloaded == len(rows)
        assert result.failures == []
        assert result.resolutions == 1
        assert sum(s.clips for s in result.stats.values()) == len(rows)

        for row in rows:
            path = allocate_clip_path(str(tmp_path), row["locale"], row["id"])
            assert os.path.exists(path)
        assert sorted(fetcher.calls) == sorted(r["path"] for r in rows)

    def test_tsv_round_trip_and_no_raw_ids(self, tmp_path, rows):
        cfg = make_config(tmp_path)
        run_pipeline(cfg, rows, FakeFetcher())

        text = (tmp_path / "clips.tsv").read_text(encoding="utf-8")
        for raw in {r["client_id"] for r in rows}:
            assert f"\t{raw}\t" not in text
            assert not text.startswith(raw)

        df = pl.read_csv(tmp_path / "clips.tsv", separator="\t", quote_char=None,
                         infer_schema_length=0)
        assert df.columns == list(rows[0].keys())
        assert df.height == len(rows)

        for parsed, row in zip(df.iter_rows(named=True), rows):
            assert parsed["client_id"] == hash_client_id(row["client_id"])
            assert parsed["path"] == f"common_voice_{row['locale']}_{row['id']}.mp3"
            assert parsed["sentence"] == row["sentence"].replace("\r", " ")
            for col in ("locale", "accent", "age", "gender"):
                # empty fields may read back as null
                assert (parsed[col] or "") == (row[col] or "")
            assert parsed["id"] == str(row["id"])

    def test_rerun_does_not_refetch_existing(self, tmp_path, rows):
        cfg = make_config(tmp_path)
        existing = allocate_clip_path(str(tmp_path), "en", 1)
        os.makedirs(os.path.dirname(existing))
        with open(existing, "wb") as f:
            f.write(b"already here")

        fetcher = FakeFetcher(payload=b"new bytes")
        result, _ = run_pipeline(cfg, rows, fetcher)

        assert rows[0]["path"] not in fetcher.calls
        assert result.clips_skipped == 1
        assert result.clips_downloaded == len(rows) - 1
        with open(existing, "rb") as f:
            assert f.read() == b"already here"

        second = FakeFetcher(payload=b"newer bytes")
        result2, _ = run_pipeline(cfg, rows, second)
        assert second.calls == []
        assert result2.clips_skipped == len(rows)
        assert result2.rows_processed == len(rows)

    def test_fetch_failures_do_not_block_completion(self, tmp_path, rows):
        cfg = make_config(tmp_path)
        fetcher = FakeFetcher(fail_keys={"2"}, raise_keys={"5"})
        result, _ = run_pipeline(cfg, rows, fetcher)

        assert result.resolutions == 1
        assert result.clips_downloaded == len(rows) - 2
        assert sorted(o.key for o in result.failures) == ["2", "5"]
        assert "exploded" in [o for o in result.failures if o.key == "5"][0].error
        assert not os.path.exists(allocate_clip_path(str(tmp_path), "en", 2))

    def test_empty_source_completes(self, tmp_path):
        cfg = make_config(tmp_path)
        result, _ = run_pipeline(cfg, [], FakeFetcher())
        assert result.rows_processed == 0
        assert result.resolutions == 1
        assert result.stats == {}

    def test_stats_only_skips_tsv_and_downloads(self, tmp_path, rows):
        cfg = make_config(tmp_path, stats_only=True)
        result, _ = run_pipeline(cfg, rows, None)

        assert result.rows_processed == len(rows)
        assert result.clips_downloaded == 0
        assert not (tmp_path / "clips.tsv").exists()
        assert not (tmp_path / "en").exists()

    def test_backpressure_bounds_in_flight(self, tmp_path):
        cfg = make_config(tmp_path, high_watermark=5, low_watermark=2)
        rows = [make_row("en", i, f"user-{i % 3}") for i in range(40)]

        async def scenario():
            gate = asyncio.Event()
            fetcher = FakeFetcher(gate=gate)
            source = ListRowSource(rows, batch_size=7)
            task = asyncio.create_task(process_and_download_clips(cfg, source, fetcher))

            for _ in range(50):
                await asyncio.sleep(0)
            started_while_blocked = fetcher.started
            paused_while_blocked = source.paused

            gate.set()
            result = await asyncio.wait_for(task, timeout=5)
            return result, source, started_while_blocked, paused_while_blocked

        result, source, started, paused = asyncio.run(scenario())

        assert paused
        assert started == 6
        assert result.peak_in_flight == 6
        assert source.pause_count >= 1
        assert source.resume_count >= 1
        assert result.clips_downloaded == 40
        assert result.resolutions == 1

    @pytest.mark.parametrize("batch_size", [1, 3, 100])
    def test_clip_count_matches_rows_for_any_batching(self, tmp_path, batch_size):
        cfg = make_config(tmp_path)
        rows = [make_row(["en", "fr", "es"][i % 3], i, f"u{i % 4}") for i in range(25)]
        result, _ = run_pipeline(cfg, rows, FakeFetcher(), batch_size=batch_size)
        assert sum(s.clips for s in result.stats.values()) == 25
        assert {k: v.clips for k, v in result.stats.items()} == {"en": 9, "fr": 8, "es": 8}

    def test_tightest_watermarks_complete(self, tmp_path):
        cfg = make_config(tmp_path, high_watermark=2, low_watermark=1)
        rows = [make_row("en", i, f"user-{i}") for i in range(12)]

        async def scenario():
            source = ListRowSource(rows, batch_size=1)
            result = await asyncio.wait_for(
                process_and_download_clips(cfg, source, FakeFetcher()), timeout=5)
            return result, source

        result, source = asyncio.run(scenario())
        assert result.rows_processed == 12
        assert result.clips_downloaded == 12
        assert not source.paused

    def test_row_failure_cancels_running_fetches(self, tmp_path):
        cfg = make_config(tmp_path)
        (tmp_path / "zz").write_text("not a directory")
        rows = [make_row("en", i) for i in range(3)] + [make_row("zz", 99)]

        async def scenario():
            fetcher = FakeFetcher(gate=asyncio.Event())
            source = ListRowSource(rows, batch_size=1)
            with pytest.raises(ClipDirError):
                await process_and_download_clips(cfg, source, fetcher)
            return asyncio.all_tasks() - {asyncio.current_task()}

        assert asyncio.run(scenario()) == set()
        assert not list((tmp_path / "en" / "clips").glob("*.part"))
