"""
Content-addressed blob storage for source PDFs and extracted images.

Blobs are written once under their SHA-256 digest, so storing identical
bytes twice returns the same reference and re-ingestion never churns image
URLs.
"""

import hashlib
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class LocalBlobStore:
    """
    Write blobs to a local directory and hand out URL-style references.

    Usage:
        images = LocalBlobStore(config.IMAGE_STORAGE_DIR, url_prefix="/data/images")
        ref = images.put(png_bytes, "png")   # "/data/images/3f2a....png"
    """

    def __init__(self, root: Path, url_prefix: Optional[str] = None):
        self.root = Path(root)
        self.url_prefix = (url_prefix or f"/data/{self.root.name}").rstrip("/")

    def _name_for(self, data: bytes, extension: str) -> str:
        digest = hashlib.sha256(data).hexdigest()
        extension = extension.lstrip(".").lower() or "bin"
        return f"{digest}.{extension}"

    def put(self, data: bytes, extension: str) -> str:
        """
        Store bytes and return their reference.

        Writes go to a temporary file first and are renamed into place, so a
        reader never sees a partially written blob.
        """
        name = self._name_for(data, extension)
        path = self.root / name

        if not path.exists():
            self.root.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.root, prefix=".tmp-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp_path, path)
            except OSError:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
            logger.debug(f"Stored blob {name} ({len(data)} bytes)")

        return f"{self.url_prefix}/{name}"

    def path_for(self, ref: str) -> Path:
        """Resolve a reference returned by put() to its file path."""
        return self.root / ref.rsplit("/", 1)[-1]

    def exists(self, ref: str) -> bool:
        return self.path_for(ref).exists()
