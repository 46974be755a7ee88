"""Load and validate YAML job configuration files."""
from __future__ import annotations

import re

import yaml

from zrb.errors import ConfigError
from zrb.models import (
    Dataset,
    EncryptionSettings,
    JobConfig,
    RemoteEndpoint,
    SnapshotSettings,
    SourceConfig,
    TransferSettings,
)
from zrb.retention import KeepLast, RetentionPolicy, parse_duration, parse_keep_spec
from zrb.retry import RetryPolicy
from zrb.store import SOURCE, SnapshotNaming
from zrb.transforms import compression

__all__ = ["ConfigError", "load_job"]


def _check_regex(pattern: str) -> str:
    try:
        re.compile(pattern)
    except re.error as e:
        raise ConfigError(f"Invalid regex in retention pattern {pattern!r}: {e}")
    return pattern


def _parse_keep_last(rule) -> KeepLast:
    if not isinstance(rule, dict) or "pattern" not in rule or "keep" not in rule:
        raise ConfigError("Each retention rule needs 'pattern' and 'keep'")
    keep = int(rule["keep"])
    if keep < 0:
        raise ConfigError(f"Retention rule 'keep' must be >= 0, got {keep}")
    return KeepLast(count=keep, pattern=_check_regex(str(rule["pattern"])))


def _parse_policy(raw, where: str, default_pattern: str) -> RetentionPolicy | None:
    """Parse a retention block: {keep: "7d24h", pattern: ..., rules: [...]}."""
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = {"keep": raw}
    if not isinstance(raw, dict):
        raise ConfigError(f"{where}: retention must be a mapping or a keep spec string")
    rules: list = []
    if raw.get("keep") is not None:
        pattern = _check_regex(str(raw.get("pattern", default_pattern)))
        rules += parse_keep_spec(str(raw["keep"]), pattern)
    for rule in raw.get("rules") or []:
        rules.append(_parse_keep_last(rule))
    if not rules:
        raise ConfigError(f"{where}: retention needs 'keep' or 'rules'")
    return RetentionPolicy(rules)


def _parse_endpoint(raw, compaction: RetentionPolicy | None, default_pattern: str) -> RemoteEndpoint:
    if not isinstance(raw, dict) or not raw.get("pool"):
        raise ConfigError("destination.pool is required")
    prefix = raw.get("prefix", "BACKUP")
    if not prefix:
        raise ConfigError("destination.prefix must not be empty")
    endpoint = RemoteEndpoint(
        pool=raw["pool"],
        prefix=prefix,
        host=raw.get("host"),
        user=raw.get("user"),
        port=int(raw.get("port", 22)),
        name=str(raw.get("name") or ""),
    )
    endpoint.retention = _parse_policy(
        raw.get("retention"), f"destination {endpoint.name}", default_pattern,
    ) or compaction
    return endpoint


def _parse_datasets(raw, default_pattern: str) -> list[Dataset]:
    if not raw:
        raise ConfigError("'datasets' list is required")
    datasets = []
    for d in raw:
        if isinstance(d, dict):
            name = str(d.get("name") or "").strip()
            retention = _parse_policy(d.get("retention"), f"dataset {name}", default_pattern)
        else:
            name = str(d).strip() if d is not None else ""
            retention = None
        if not name or name == "None" or "@" in name:
            raise ConfigError(f"Invalid dataset entry: {d!r}")
        datasets.append(Dataset(name=name, retention=retention))
    names = [d.name for d in datasets]
    if len(set(names)) != len(names):
        raise ConfigError("Duplicate entries in 'datasets'")
    return datasets


def _parse_transfer(raw) -> TransferSettings:
    raw = raw or {}
    settings = TransferSettings(
        compression=raw.get("compression") or None,
        raw=bool(raw.get("raw", False)),
        intermediates=bool(raw.get("intermediates", True)),
        resume_cache=raw.get("resume_cache"),
        chunk_size=int(raw.get("chunk_size", 128 * 1024)),
    )
    if settings.compression in ("none", "off"):
        settings.compression = None
    if settings.compression:
        compression(settings.compression)
    if settings.chunk_size <= 0:
        raise ConfigError("transfer.chunk_size must be positive")
    enc = raw.get("encryption")
    if enc:
        if not isinstance(enc, dict) or not enc.get("key_file"):
            raise ConfigError("transfer.encryption.key_file is required")
        settings.encryption = EncryptionSettings(
            key_file=enc["key_file"],
            remote_key_file=enc.get("remote_key_file"),
            cipher=enc.get("cipher", "aes-256-ctr"),
        )
    return settings


def _parse_retry(raw) -> RetryPolicy:
    raw = raw or {}
    max_attempts = int(raw.get("max_attempts", 3))
    if max_attempts < 1:
        raise ConfigError(f"retry.max_attempts must be >= 1, got {max_attempts}")
    delays = tuple(float(d) for d in raw.get("delays", (1, 5, 30)))
    if any(d < 0 for d in delays):
        raise ConfigError("retry.delays must not be negative")
    return RetryPolicy(max_attempts=max_attempts, delays=delays)


def load_job(path: str) -> JobConfig:
    with open(path) as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ConfigError(f"Config must be a YAML mapping: {path}")

    # --- source ---
    src_raw = raw.get("source")
    if not src_raw or not src_raw.get("pool"):
        raise ConfigError("source.pool is required")
    source = SourceConfig(pool=src_raw["pool"])

    # --- snapshots ---
    snap_raw = raw.get("snapshot") or {}
    prefix = str(snap_raw.get("prefix", "zrb"))
    if not re.fullmatch(r"[A-Za-z0-9_.:]+", prefix):
        raise ConfigError(f"snapshot.prefix {prefix!r} must be letters, digits, '_', '.' or ':'")
    snapshot = SnapshotSettings(
        prefix=prefix,
        min_interval=parse_duration(snap_raw.get("min_interval", "15m")),
    )
    managed = SnapshotNaming(prefix).pattern

    # --- retention ---
    retention = _parse_policy(raw.get("retention"), "source", managed)
    compaction = None
    if raw.get("compaction"):
        compaction = RetentionPolicy([_parse_keep_last(r) for r in raw["compaction"]])

    # --- destinations ---
    if raw.get("destinations") is not None:
        dst_raw = raw["destinations"]
        if not isinstance(dst_raw, list) or not dst_raw:
            raise ConfigError("'destinations' must be a non-empty list")
    elif raw.get("destination") is not None:
        dst_raw = [raw["destination"]]
    else:
        raise ConfigError("destination.pool is required")
    destinations = [_parse_endpoint(d, compaction, managed) for d in dst_raw]
    names = [d.name for d in destinations]
    if len(set(names)) != len(names):
        raise ConfigError("Destination names must be unique; set 'name' on each destination")
    if SOURCE in names:
        raise ConfigError(f"Destination name {SOURCE!r} is reserved")

    # --- run ---
    concurrency = int(raw.get("concurrency", 1))
    if concurrency < 1:
        raise ConfigError(f"concurrency must be >= 1, got {concurrency}")

    datasets = _parse_datasets(raw.get("datasets", []), managed)
    for ds in datasets:
        if ds.pool != source.pool:
            raise ConfigError(f"Dataset {ds.name} is not in source pool {source.pool}")

    return JobConfig(
        source=source,
        destinations=destinations,
        datasets=datasets,
        retention=retention,
        snapshot=snapshot,
        transfer=_parse_transfer(raw.get("transfer")),
        concurrency=concurrency,
        retry=_parse_retry(raw.get("retry")),
    )
