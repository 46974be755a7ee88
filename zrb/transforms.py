"""Stream transforms: compression and encryption filter pairs.

Each transform is a pair of filter commands. Encoders run on the source after
`zfs send`; decoders run on the destination before `zfs recv`, in reverse
order, so the destination always receives a plain zfs stream.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from zrb.errors import ConfigError

if TYPE_CHECKING:
    from zrb.models import EncryptionSettings, TransferSettings


@dataclass(frozen=True)
class Transform:
    name: str
    encode: tuple[str, ...]
    decode: tuple[str, ...]


COMPRESSORS = {
    "gzip": Transform("gzip", ("gzip", "-c"), ("gzip", "-dc")),
    "zstd": Transform("zstd", ("zstd", "-c", "-q"), ("zstd", "-dc", "-q")),
    "lz4": Transform("lz4", ("lz4", "-c"), ("lz4", "-dc")),
    "xz": Transform("xz", ("xz", "-c"), ("xz", "-dc")),
}


def compression(name: str) -> Transform:
    try:
        return COMPRESSORS[name]
    except KeyError:
        raise ConfigError(
            f"Unknown compression {name!r}; choose one of {', '.join(sorted(COMPRESSORS))}"
        ) from None


def encryption(settings: "EncryptionSettings") -> Transform:
    remote_key = settings.remote_key_file or settings.key_file
    base = ("openssl", "enc", f"-{settings.cipher}", "-pbkdf2")
    return Transform(
        "openssl",
        base + ("-e", "-pass", f"file:{settings.key_file}"),
        base + ("-d", "-pass", f"file:{remote_key}"),
    )


@dataclass(frozen=True)
class TransformChain:
    transforms: tuple[Transform, ...] = field(default_factory=tuple)

    @classmethod
    def from_settings(cls, settings: "TransferSettings") -> "TransformChain":
        transforms = []
        if settings.compression:
            transforms.append(compression(settings.compression))
        if settings.encryption is not None:
            transforms.append(encryption(settings.encryption))
        return cls(tuple(transforms))

    @property
    def encoders(self) -> list[list[str]]:
        return [list(t.encode) for t in self.transforms]

    @property
    def decoders(self) -> list[list[str]]:
        return [list(t.decode) for t in reversed(self.transforms)]

    def __bool__(self) -> bool:
        return bool(self.transforms)

    def describe(self) -> str:
        return " -> ".join(t.name for t in self.transforms) or "none"
