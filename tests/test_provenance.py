"""Tests for image provenance records."""

from __future__ import annotations

import pytest

from boxkeeper.provenance import (
    ImageProvenance,
    clear_provenance,
    load_provenance,
    save_provenance,
)


class TestImageProvenance:
    def test_built_has_no_registry(self) -> None:
        record = ImageProvenance.built("0.4.0")
        assert record.source == "build"
        assert record.registry is None

    def test_built_record_survives_save_and_load(self) -> None:
        record = ImageProvenance.built("0.4.0")
        save_provenance(record)
        loaded = load_provenance()
        assert loaded == record
        assert loaded is not None and loaded.registry is None

    def test_from_dict_rejects_unknown_source(self) -> None:
        with pytest.raises(ValueError, match="Unknown image source"):
            ImageProvenance.from_dict(
                {"version": "1", "source": "magic", "acquired_at": "2026-01-01T00:00:00+00:00"}
            )

    def test_from_dict_rejects_missing_fields(self) -> None:
        with pytest.raises(ValueError):
            ImageProvenance.from_dict({"source": "build"})

    def test_describe(self) -> None:
        pulled = ImageProvenance("0.4.0", "prebuilt", "ghcr.io", "2026-01-05T10:00:00+00:00")
        assert pulled.describe() == "v0.4.0, pulled from ghcr.io at 2026-01-05T10:00:00+00:00"
        built = ImageProvenance("0.4.0", "build", None, "2026-01-05T10:00:00+00:00")
        assert "built from source" in built.describe()


class TestStorage:
    def test_missing_is_none(self) -> None:
        assert load_provenance() is None

    def test_per_host_records_are_separate(self) -> None:
        save_provenance(ImageProvenance.prebuilt("0.4.0", "ghcr.io"), "prod")
        assert load_provenance() is None
        loaded = load_provenance("prod")
        assert loaded is not None and loaded.registry == "ghcr.io"

    def test_previous_slot(self) -> None:
        save_provenance(ImageProvenance.prebuilt("0.3.0", "docker.io"), previous=True)
        assert load_provenance() is None
        previous = load_provenance(previous=True)
        assert previous is not None and previous.version == "0.3.0"
        clear_provenance(previous=True)
        assert load_provenance(previous=True) is None

    def test_corrupt_file_is_ignored(self, isolated_dirs) -> None:
        _, data_dir = isolated_dirs
        data_dir.mkdir(parents=True)
        (data_dir / "image-state.json").write_text("{not json")
        assert load_provenance() is None

    def test_clear_missing_is_noop(self) -> None:
        clear_provenance("nowhere")
