"""
Tests for the local store.
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from skumirror.exceptions import StorageError
from skumirror.store.local import LocalStore
from skumirror.types import CacheKey

from conftest import PNG_BYTES


class TestLocalStoreWrite:
    """Tests for writing files."""

    def test_write_returns_public_path(self, store: LocalStore) -> None:
        """Test that write stores bytes and returns the public path."""
        key = CacheKey("SKU123", 1)
        local_path = store.write(key, PNG_BYTES)

        assert local_path == "/images/products/SKU123_1.jpg"
        assert store.exists(key)
        assert store.path_for(key).read_bytes() == PNG_BYTES

    def test_write_creates_root(self, temp_dir: Path) -> None:
        """Test that the directory is created on first write."""
        store = LocalStore(temp_dir / "deep" / "images")
        store.write(CacheKey("A", 1), b"x")
        assert (temp_dir / "deep" / "images" / "A_1.jpg").is_file()

    def test_overwrite_replaces_content(self, store: LocalStore) -> None:
        """Test that a second write replaces the file."""
        key = CacheKey("SKU123", 1)
        store.write(key, b"old")
        store.write(key, b"new")
        assert store.path_for(key).read_bytes() == b"new"

    def test_no_temporary_files_left(self, store: LocalStore) -> None:
        """Test that a successful write leaves only the final file."""
        store.write(CacheKey("SKU123", 1), PNG_BYTES)
        assert sorted(p.name for p in store.root.iterdir()) == ["SKU123_1.jpg"]

    def test_failed_rename_leaves_nothing(
        self, store: LocalStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that a failing move raises StorageError and cleans up."""
        key = CacheKey("SKU123", 1)

        def broken_replace(src: str, dst: str) -> None:
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", broken_replace)

        with pytest.raises(StorageError) as exc_info:
            store.write(key, PNG_BYTES)

        assert "disk full" in str(exc_info.value)
        assert not store.exists(key)
        assert list(store.root.iterdir()) == []

    def test_final_path_absent_until_rename(
        self, store: LocalStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that the final path only appears at the atomic move."""
        key = CacheKey("SKU123", 1)
        seen_before_move: list[bool] = []
        real_replace = os.replace

        def observing_replace(src: str, dst: str) -> None:
            seen_before_move.append(store.exists(key))
            assert Path(src).read_bytes() == PNG_BYTES
            real_replace(src, dst)

        monkeypatch.setattr(os, "replace", observing_replace)
        store.write(key, PNG_BYTES)

        assert seen_before_move == [False]
        assert store.exists(key)


class TestLocalStorePaths:
    """Tests for key to path mapping."""

    def test_path_for_is_deterministic(self, store: LocalStore) -> None:
        """Test that identical keys map to identical paths."""
        assert store.path_for(CacheKey("SKU123", 1)) == store.path_for(CacheKey("SKU123", 1))

    def test_distinct_keys_distinct_paths(self, store: LocalStore) -> None:
        """Test that different keys never share a path."""
        keys = [CacheKey("A_1", 2), CacheKey("A", 12), CacheKey("A_12", 1), CacheKey("A", 1)]
        assert len({store.path_for(k) for k in keys}) == len(keys)

    def test_paths_stay_inside_root(self, store: LocalStore) -> None:
        """Test that every path is a direct child of the root."""
        path = store.path_for(CacheKey.create("A-1_b", 3))
        assert path.parent == store.root

    def test_custom_prefix_and_extension(self, temp_dir: Path) -> None:
        """Test that prefix and extension are configurable."""
        store = LocalStore(temp_dir, public_prefix="/media/", extension=".png")
        assert store.public_path(CacheKey("X", 2)) == "/media/X_2.png"


class TestLocalStoreScanAndRemove:
    """Tests for scanning and removal."""

    def test_scan_yields_complete_files(self, store: LocalStore) -> None:
        """Test that scan maps stored files back to keys."""
        store.write(CacheKey("BOX_A", 7), b"1234")
        store.write(CacheKey("SKU123", 1), b"12")

        found = dict(store.scan())
        assert found == {CacheKey("BOX_A", 7): 4, CacheKey("SKU123", 1): 2}

    def test_scan_removes_stale_temporaries(self, store: LocalStore) -> None:
        """Test that leftovers from interrupted writes are deleted."""
        store.root.mkdir(parents=True)
        stale = store.root / ".SKU123_1.abc123.tmp"
        stale.write_bytes(b"partial")

        assert list(store.scan()) == []
        assert not stale.exists()

    def test_scan_skips_foreign_files(self, store: LocalStore) -> None:
        """Test that files not written by the store are ignored."""
        store.root.mkdir(parents=True)
        (store.root / "readme.txt").write_text("hi")
        (store.root / "noindex.jpg").write_bytes(b"x")
        (store.root / "bad name_1.jpg").write_bytes(b"x")

        assert list(store.scan()) == []

    def test_scan_on_missing_root(self, temp_dir: Path) -> None:
        """Test that scanning a missing directory yields nothing."""
        assert list(LocalStore(temp_dir / "nope").scan()) == []

    def test_remove(self, store: LocalStore) -> None:
        """Test that remove deletes the file and reports it."""
        key = CacheKey("SKU123", 1)
        store.write(key, b"x")
        assert store.remove(key) is True
        assert not store.exists(key)
        assert store.remove(key) is False
