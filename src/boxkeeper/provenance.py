"""Image provenance: how the current image was obtained.

One JSON record per engine target, written after every successful
acquisition and read by status and rollback::

    {"version": "0.4.0", "source": "prebuilt", "registry": "ghcr.io",
     "acquired_at": "2026-01-05T10:00:00+00:00"}
"""

from __future__ import annotations

import contextlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .logging import get_logger
from .paths import get_provenance_path

logger = get_logger(__name__)

SOURCE_PREBUILT = "prebuilt"
SOURCE_BUILD = "build"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass(frozen=True)
class ImageProvenance:
    """Where the active image came from and when."""

    version: str
    source: str
    registry: str | None
    acquired_at: str

    @classmethod
    def prebuilt(cls, version: str, registry: str) -> ImageProvenance:
        return cls(version=version, source=SOURCE_PREBUILT, registry=registry, acquired_at=_now())

    @classmethod
    def built(cls, version: str) -> ImageProvenance:
        return cls(version=version, source=SOURCE_BUILD, registry=None, acquired_at=_now())

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "source": self.source,
            "registry": self.registry,
            "acquired_at": self.acquired_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImageProvenance:
        """Parse a stored record.

        Raises:
            ValueError: Missing fields or unknown source.
        """
        try:
            source = data["source"]
            record = cls(
                version=str(data["version"]),
                source=source,
                registry=data.get("registry"),
                acquired_at=str(data["acquired_at"]),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Invalid provenance record: {e}") from e
        if source not in (SOURCE_PREBUILT, SOURCE_BUILD):
            raise ValueError(f"Unknown image source: {source!r}")
        return record

    def describe(self) -> str:
        """One-line summary for status output."""
        if self.source == SOURCE_BUILD:
            origin = "built from source"
        else:
            origin = f"pulled from {self.registry or 'registry'}"
        return f"v{self.version}, {origin} at {self.acquired_at}"


def save_provenance(
    record: ImageProvenance, host_name: str | None = None, *, previous: bool = False
) -> None:
    """Persist the record for the local engine or a named host."""
    path = get_provenance_path(host_name, previous=previous)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(record.to_dict(), indent=2) + "\n", encoding="utf-8")
    logger.debug("Saved image provenance to %s: %s", path, record)


def load_provenance(
    host_name: str | None = None, *, previous: bool = False
) -> ImageProvenance | None:
    """Read the stored record; None when missing or unreadable."""
    path = get_provenance_path(host_name, previous=previous)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return ImageProvenance.from_dict(data)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable image state %s: %s", path, e)
        return None


def clear_provenance(host_name: str | None = None, *, previous: bool = False) -> None:
    with contextlib.suppress(FileNotFoundError):
        get_provenance_path(host_name, previous=previous).unlink()
