#!/usr/bin/env python3
"""
Common Voice Bundler Corpus Statistics

Builds the release stats.json document:
1. Per-locale clip/split/user tallies collected while rows stream in
2. Per-locale clip durations from the external duration tool
3. Per-locale bucket counts from the corpus-splitting tool's .tsv output
4. Bundle sizes from the archive upload stage
5. Derived rates and hours, plus release-wide totals
"""

from __future__ import annotations

import asyncio
import json
import math
import os
from dataclasses import dataclass, field
from typing import Any, Optional


SPLIT_CATEGORIES = ("accent", "age", "gender")

DURATION_TOOL = "mp3-duration-sum"
CORPORA_TOOL = "create-corpora"

UNITS_PER_HOUR = {
    "ms": 60 * 60 * 1000,
    "s": 60 * 60,
    "min": 60,
}


class ExternalToolError(RuntimeError):
    """An external helper exited non-zero or printed something unusable."""


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class LocaleStats:
    """Running tallies for one locale, owned by the row aggregator."""
    clips: int = 0
    splits: dict[str, dict[str, int]] = field(
        default_factory=lambda: {category: {} for category in SPLIT_CATEGORIES}
    )
    users: set[str] = field(default_factory=set)

    def add(self, row: dict[str, Any]) -> None:
        self.clips += 1
        for category in SPLIT_CATEGORIES:
            value = row.get(category)
            tally = self.splits[category]
            tally[value] = tally.get(value, 0) + 1
        self.users.add(row.get("client_id"))


def format_locale_stats(stats: dict[str, LocaleStats]) -> dict[str, dict[str, Any]]:
    """
    Publishable view of the tallies: split values as fractions of the
    locale's clips (2 decimals) and users as a distinct count.
    """
    formatted = {}
    for locale, ls in stats.items():
        splits = {}
        for category, values in ls.splits.items():
            # None and "" both publish as "", so their counts are combined
            counts: dict[str, int] = {}
            for value, count in values.items():
                name = "" if value is None else str(value)
                counts[name] = counts.get(name, 0) + count
            splits[category] = {name: round(count / ls.clips, 2) for name, count in counts.items()}
        formatted[locale] = {
            "clips": ls.clips,
            "splits": splits,
            "users": len(ls.users),
        }
    return formatted


# =============================================================================
# LOCALE DIRECTORIES
# =============================================================================

def get_locale_dirs(out_dir: str) -> list[str]:
    """Names of the locale directories directly under out_dir."""
    if not os.path.isdir(out_dir):
        return []
    return sorted(
        name for name in os.listdir(out_dir)
        if os.path.isdir(os.path.join(out_dir, name))
    )


async def run_tool(*args: str) -> str:
    """Run an external helper and return its stdout; raise on non-zero exit."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise ExternalToolError(f"{args[0]} not found on PATH") from e

    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        message = stderr.decode("utf-8", errors="replace").strip()
        raise ExternalToolError(f"{' '.join(args)} exited with {proc.returncode}: {message}")
    return stdout.decode("utf-8", errors="replace")


# =============================================================================
# DURATIONS
# =============================================================================

def parse_duration(output: str) -> float | int:
    """Parse the duration tool's single numeric result (milliseconds)."""
    text = output.strip()
    try:
        value = float(text)
    except ValueError as e:
        raise ExternalToolError(f"Unparsable duration output: {text[:80]!r}") from e
    if math.isnan(value) or math.isinf(value):
        raise ExternalToolError(f"Unparsable duration output: {text[:80]!r}")
    return int(value) if value.is_integer() else value


async def sum_durations(out_dir: str, tool: str = DURATION_TOOL) -> dict[str, dict[str, Any]]:
    """Total clip duration per locale, one tool invocation per locale."""
    durations = {}
    for locale in get_locale_dirs(out_dir):
        clips_path = os.path.join(out_dir, locale, "clips")
        output = await run_tool(tool, clips_path)
        durations[locale] = {"duration": parse_duration(output)}
        print(f"[Duration] {locale}: {durations[locale]['duration']} ms")
    return durations


# =============================================================================
# BUCKETS
# =============================================================================

def count_file_lines(file_path: str, chunk_size: int = 1024 * 1024) -> int:
    """Number of newline characters in a file."""
    count = 0
    with open(file_path, "rb") as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            count += chunk.count(b"\n")
    return count


async def run_corpora(tsv_path: str, out_dir: str, tool: str = CORPORA_TOOL) -> None:
    print(f"[Buckets] Running {tool} on {tsv_path}")
    await run_tool(tool, "-f", tsv_path, "-d", out_dir, "-v")


def count_buckets(out_dir: str) -> dict[str, dict[str, Any]]:
    """Row counts (header excluded) of each bucket .tsv per locale."""
    buckets = {}
    for locale in get_locale_dirs(out_dir):
        locale_path = os.path.join(out_dir, locale)
        counts = {}
        for file_name in sorted(os.listdir(locale_path)):
            if not file_name.endswith(".tsv"):
                continue
            lines = count_file_lines(os.path.join(locale_path, file_name))
            counts[file_name[:-len(".tsv")]] = max(lines - 1, 0)
        buckets[locale] = {"buckets": counts}
        print(f"[Buckets] {locale}: {counts}")
    return buckets


# =============================================================================
# AGGREGATION
# =============================================================================

def merge_locale_stats(*sources: Optional[dict[str, dict[str, Any]]]) -> dict[str, dict[str, Any]]:
    """
    Shallow per-locale union of partial stats. When two sources carry the
    same field for a locale, the later source wins.
    """
    merged: dict[str, dict[str, Any]] = {}
    for source in sources:
        if not source:
            continue
        for locale, partial in source.items():
            merged.setdefault(locale, {}).update(partial)
    return merged


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def unit_to_hours(duration: float, unit: str, sig_dig: int) -> float:
    """Convert to hours, truncated (never rounded up) to sig_dig decimals."""
    per_hour = UNITS_PER_HOUR.get(unit, 1)
    multiplier = 10 ** sig_dig
    return math.floor((duration / per_hour) * multiplier) / multiplier


def calculate_aggregate_stats(
    locales: dict[str, dict[str, Any]],
    bundle_url_template: str,
) -> dict[str, Any]:
    """Derive per-locale rates/hours and release totals. Inputs are not modified."""
    total_duration = 0
    total_valid_duration_secs = 0
    out_locales = {}

    for locale, partial in locales.items():
        lang = dict(partial)
        duration = lang.get("duration", 0)
        clips = lang.get("clips", 0)
        valid_clips = lang.get("buckets", {}).get("validated", 0)

        if clips:
            lang["avgDurationSecs"] = round_half_up(duration / clips) / 1000
            lang["validDurationSecs"] = round_half_up((duration / clips) * valid_clips) / 1000
        else:
            lang["avgDurationSecs"] = 0
            lang["validDurationSecs"] = 0

        lang["totalHrs"] = unit_to_hours(duration, "ms", 2)
        lang["validHrs"] = unit_to_hours(lang["validDurationSecs"], "s", 2)

        out_locales[locale] = lang
        total_duration += duration
        total_valid_duration_secs += lang["validDurationSecs"]

    total_duration = math.floor(total_duration)
    total_valid_duration_secs = math.floor(total_valid_duration_secs)

    return {
        "bundleURLTemplate": bundle_url_template,
        "totalDuration": total_duration,
        "totalValidDurationSecs": total_valid_duration_secs,
        "totalHrs": unit_to_hours(total_duration, "ms", 0),
        "totalValidHrs": unit_to_hours(total_valid_duration_secs, "s", 0),
        "locales": out_locales,
    }


# =============================================================================
# REPORT OUTPUT
# =============================================================================

def write_stats_json(out_dir: str, stats: dict[str, Any]) -> str:
    path = os.path.join(out_dir, "stats.json")
    with open(path, "w", encoding="utf-8") as f:
        json.dump(stats, f, indent=2)
    return os.path.abspath(path)


def print_console_report(stats: dict[str, Any]) -> None:
    """Print a human-readable summary of the stats document."""
    sep = "=" * 72
    print(f"\n{sep}")
    print("RELEASE STATISTICS")
    print(sep)
    print(f"  Bundle URL:        {stats['bundleURLTemplate']}")
    print(f"  Total hours:       {stats['totalHrs']}")
    print(f"  Valid hours:       {stats['totalValidHrs']}")
    print(f"  Locales:           {len(stats['locales'])}")
    for locale, lang in sorted(stats["locales"].items()):
        print(f"    {locale:<10} clips={lang.get('clips', 0):<8} "
              f"users={lang.get('users', 0):<6} hrs={lang['totalHrs']:<8} "
              f"valid_hrs={lang['validHrs']}")
    print(sep)
