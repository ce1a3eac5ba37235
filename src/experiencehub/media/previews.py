"""Local staging area backing previews of files that are not uploaded yet."""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
import uuid
from pathlib import Path
from typing import Dict

from experiencehub.models import PreviewRef
from experiencehub.utils.files import sanitize_filename

LOGGER = logging.getLogger(__name__)


class PreviewPool:
    """Issues preview references and releases each of them exactly once.

    Every reference is a staged copy of the selected file under a private
    temporary directory. Releasing an already released reference is a no-op.
    """

    def __init__(self, root: Path | None = None) -> None:
        self._owns_root = root is None
        self.root = Path(root) if root is not None else Path(tempfile.mkdtemp(prefix="experiencehub-previews-"))
        self.root.mkdir(parents=True, exist_ok=True)
        self._live: Dict[str, PreviewRef] = {}
        self._lock = threading.Lock()

    def create(self, content: bytes, filename: str) -> PreviewRef:
        token = uuid.uuid4().hex
        path = self.root / f"{token}_{sanitize_filename(Path(filename).name) or 'file'}"
        path.write_bytes(content)
        ref = PreviewRef(token=token, path=path, filename=filename)
        with self._lock:
            self._live[token] = ref
        return ref

    def release(self, ref: PreviewRef) -> bool:
        """Drop the staged copy; returns False when it was already released."""
        with self._lock:
            live = self._live.pop(ref.token, None)
        if live is None:
            return False
        try:
            live.path.unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.warning("Could not remove preview %s: %s", live.path, exc)
        return True

    def is_live(self, ref: PreviewRef) -> bool:
        with self._lock:
            return ref.token in self._live

    def lookup(self, token: str) -> PreviewRef | None:
        with self._lock:
            return self._live.get(token)

    def __len__(self) -> int:
        with self._lock:
            return len(self._live)

    def close(self) -> None:
        """Release every outstanding reference and remove the staging area."""
        with self._lock:
            refs = list(self._live.values())
        for ref in refs:
            self.release(ref)
        if self._owns_root:
            shutil.rmtree(self.root, ignore_errors=True)
