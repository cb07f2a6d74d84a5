"""
Key-addressed file storage for mirrored images.

Files live flat under the images directory as ``<sku>_<index><ext>``.
Writes go to a hidden temporary file in the same directory and are moved
into place with ``os.replace``, so a reader either sees the complete file
under its final name or nothing at all.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Iterator

from skumirror.exceptions import InvalidKeyError, StorageError
from skumirror.logging import get_logger
from skumirror.types import CacheKey

logger = get_logger(__name__)

TEMP_SUFFIX = ".tmp"


class LocalStore:
    """Durable byte storage addressed by cache key.

    Knows nothing about remote URLs or entry states.
    """

    def __init__(
        self,
        root: str | Path,
        public_prefix: str = "/images/products",
        extension: str = ".jpg",
    ) -> None:
        """Initialize the store.

        Args:
            root: Directory holding the stored files.
            public_prefix: URL prefix the files are served under.
            extension: Extension given to every stored file.
        """
        self.root = Path(root)
        self.public_prefix = public_prefix.rstrip("/")
        self.extension = extension

    def filename_for(self, key: CacheKey) -> str:
        return f"{key.slug}{self.extension}"

    def path_for(self, key: CacheKey) -> Path:
        """Filesystem path of the stored file for ``key``."""
        return self.root / self.filename_for(key)

    def public_path(self, key: CacheKey) -> str:
        """Renderable path handed back to callers as ``localPath``."""
        return f"{self.public_prefix}/{self.filename_for(key)}"

    def exists(self, key: CacheKey) -> bool:
        return self.path_for(key).is_file()

    def write(self, key: CacheKey, content: bytes) -> str:
        """Store ``content`` under ``key`` with all-or-nothing visibility.

        Args:
            key: Destination key.
            content: Complete image bytes.

        Returns:
            The public path of the stored file.

        Raises:
            StorageError: If the file could not be written or moved into
                place. No temporary file is left behind.
        """
        final_path = self.path_for(key)
        tmp_name: str | None = None
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{key.slug}.", suffix=TEMP_SUFFIX, dir=self.root
            )
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_name, 0o644)
            os.replace(tmp_name, final_path)
            tmp_name = None
        except OSError as e:
            raise StorageError(
                "Failed to store image",
                context={"path": str(final_path), "error": str(e)},
            ) from e
        finally:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)

        logger.debug("Stored file", path=str(final_path), size=len(content))
        return self.public_path(key)

    def remove(self, key: CacheKey) -> bool:
        """Delete the stored file for ``key``; False if there was none."""
        try:
            self.path_for(key).unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(
                "Failed to remove image",
                context={"path": str(self.path_for(key)), "error": str(e)},
            ) from e
        return True

    def scan(self) -> Iterator[tuple[CacheKey, int]]:
        """Yield ``(key, size)`` for every complete stored file.

        Leftover temporary files from interrupted writes are deleted.
        Files whose names do not map back to a key are skipped.
        """
        if not self.root.is_dir():
            return

        for path in sorted(self.root.iterdir()):
            if not path.is_file():
                continue
            if path.name.startswith(".") and path.name.endswith(TEMP_SUFFIX):
                logger.info("Removing stale temporary file", path=str(path))
                path.unlink(missing_ok=True)
                continue
            if path.suffix.lower() != self.extension:
                continue

            head, sep, tail = path.stem.rpartition("_")
            if not (sep and tail.isdigit()):
                logger.debug("Skipping unrecognised file", path=str(path))
                continue
            try:
                key = CacheKey.create(head, int(tail))
            except InvalidKeyError:
                logger.debug("Skipping unrecognised file", path=str(path))
                continue

            yield key, path.stat().st_size
