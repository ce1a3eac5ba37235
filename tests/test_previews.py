"""Tests for the preview staging pool."""

from __future__ import annotations

from pathlib import Path

from experiencehub.media.previews import PreviewPool


class TestPreviewPool:
    """Preview references are released exactly once."""

    def test_create_stages_file(self, tmp_path: Path) -> None:
        pool = PreviewPool(tmp_path)
        ref = pool.create(b"png-bytes", "my photo.png")

        assert ref.path.read_bytes() == b"png-bytes"
        assert ref.path.name.endswith("my_photo.png")
        assert ref.filename == "my photo.png"
        assert pool.is_live(ref)
        assert pool.lookup(ref.token) == ref
        assert len(pool) == 1

    def test_release_is_idempotent(self, tmp_path: Path) -> None:
        pool = PreviewPool(tmp_path)
        ref = pool.create(b"x", "a.png")

        assert pool.release(ref) is True
        assert pool.release(ref) is False
        assert not pool.is_live(ref)
        assert not ref.path.exists()
        assert pool.lookup(ref.token) is None

    def test_filename_cannot_escape_root(self, tmp_path: Path) -> None:
        pool = PreviewPool(tmp_path)
        ref = pool.create(b"x", "../../evil.png")
        assert ref.path.parent == tmp_path

    def test_close_releases_everything(self) -> None:
        pool = PreviewPool()
        refs = [pool.create(b"x", f"{i}.png") for i in range(3)]
        root = pool.root

        pool.close()

        assert len(pool) == 0
        assert not any(pool.is_live(ref) for ref in refs)
        assert not root.exists()

    def test_close_keeps_caller_root(self, tmp_path: Path) -> None:
        pool = PreviewPool(tmp_path)
        pool.create(b"x", "a.png")
        pool.close()
        assert tmp_path.exists()
