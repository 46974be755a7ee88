"""Retention policies: which snapshots to keep at a location."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from zrb.errors import ConfigError
from zrb.models import Snapshot

PERIODS = ("monthly", "weekly", "daily", "hourly", "frequent")
_SPEC_UNITS = {"m": "monthly", "w": "weekly", "d": "daily", "h": "hourly", "f": "frequent"}
_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 7 * 86400}


def _period_start(period: str, t: datetime) -> datetime:
    t = t.replace(second=0, microsecond=0)
    if period == "frequent":
        return t.replace(minute=t.minute - t.minute % 15)
    t = t.replace(minute=0)
    if period == "hourly":
        return t
    t = t.replace(hour=0)
    if period == "daily":
        return t
    if period == "weekly":
        return t - timedelta(days=t.weekday())
    return t.replace(day=1)


def _previous_start(period: str, start: datetime) -> datetime:
    if period == "frequent":
        return start - timedelta(minutes=15)
    if period == "hourly":
        return start - timedelta(hours=1)
    if period == "daily":
        return start - timedelta(days=1)
    if period == "weekly":
        return start - timedelta(weeks=1)
    if start.month == 1:
        return start.replace(year=start.year - 1, month=12)
    return start.replace(month=start.month - 1)


@dataclass
class KeepLast:
    """Keep the N most recent snapshots matching a pattern.

    Pattern is matched with re.fullmatch against the entire snapshot name,
    so it must match the complete string. E.g. "zfs-auto-snap_daily-.*"
    matches "zfs-auto-snap_daily-2026-02-01-1000" but "daily" alone does not.
    """
    count: int
    pattern: str = ".*"

    def governs(self, snapshot: Snapshot) -> bool:
        return bool(re.fullmatch(self.pattern, snapshot.name))

    def keep(self, snapshots: list[Snapshot], now: datetime) -> set[str]:
        matching = [s for s in snapshots if self.governs(s)]
        if self.count <= 0:
            return set()
        return {s.name for s in matching[-self.count:]}


@dataclass
class KeepPeriodic:
    """Keep the oldest snapshot of each of the last `count` periods."""
    period: str
    count: int
    pattern: str | None = None

    def __post_init__(self):
        if self.period not in PERIODS:
            raise ConfigError(f"Unknown retention period {self.period!r}")

    def governs(self, snapshot: Snapshot) -> bool:
        if snapshot.creation is None:
            return False
        return self.pattern is None or bool(re.fullmatch(self.pattern, snapshot.name))

    def anchors(self, now: datetime) -> list[datetime]:
        """Period starts, newest first."""
        starts = []
        start = _period_start(self.period, now)
        for _ in range(self.count):
            starts.append(start)
            start = _previous_start(self.period, start)
        return starts

    def keep(self, snapshots: list[Snapshot], now: datetime) -> set[str]:
        governed = [s for s in snapshots if self.governs(s)]
        kept: set[str] = set()
        end = None
        for start in self.anchors(now):
            lo = start.timestamp()
            hi = end.timestamp() if end is not None else None
            for snap in governed:
                if snap.creation >= lo and (hi is None or snap.creation < hi):
                    kept.add(snap.name)
                    break
            end = start
        return kept


@dataclass
class RetentionPolicy:
    """An ordered set of rules evaluated together.

    A snapshot no rule governs is kept. A governed snapshot is kept if any
    governing rule keeps it. The newest snapshot is always kept.
    """
    rules: list = field(default_factory=list)

    def keep_set(self, snapshots: list[Snapshot], now: datetime | None = None) -> set[str]:
        if not snapshots:
            return set()
        now = now or datetime.now(timezone.utc)
        governed: set[str] = set()
        kept: set[str] = set()
        for rule in self.rules:
            governed |= {s.name for s in snapshots if rule.governs(s)}
            kept |= rule.keep(snapshots, now)
        keep = {s.name for s in snapshots if s.name not in governed or s.name in kept}
        keep.add(snapshots[-1].name)
        return keep

    def __bool__(self) -> bool:
        return bool(self.rules)


def parse_keep_spec(spec: str, pattern: str | None = None) -> list[KeepPeriodic]:
    """Parse a keep spec such as "1m4w7d24h4f".

    Each count is followed by a unit: m(onthly), w(eekly), d(aily),
    h(ourly) or f(requent, every 15 minutes).
    """
    counts = dict.fromkeys(PERIODS, 0)
    pos = 0
    for match in re.finditer(r"(\d+)([a-z])", spec):
        if match.start() != pos or match.group(2) not in _SPEC_UNITS:
            raise ConfigError(f"Invalid keep spec {spec!r}")
        counts[_SPEC_UNITS[match.group(2)]] = int(match.group(1))
        pos = match.end()
    if pos != len(spec):
        raise ConfigError(f"Invalid keep spec {spec!r}")
    if not any(counts.values()):
        raise ConfigError(f"Keep spec {spec!r} keeps nothing; refusing to delete everything")
    return [KeepPeriodic(p, n, pattern) for p, n in counts.items() if n]


def parse_duration(value) -> int:
    """Parse "15m", "2h", "1d" or a plain number of seconds."""
    if isinstance(value, int):
        return value
    match = re.fullmatch(r"\s*(\d+)\s*([smhdw]?)\s*", str(value))
    if not match:
        raise ConfigError(f"Invalid duration {value!r}")
    return int(match.group(1)) * _DURATION_UNITS.get(match.group(2) or "s")
