"""
Content index — local record of registered content.

Storage layout:
    ~/.mediaseal/index.json   — content id -> piece id, tx hash, dataset owner, algorithm

All writes are atomic (temp file + os.replace) for crash safety.
Keyed by content identifier — recording the same mapping twice is a no-op.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from mediaseal import DEFAULT_DATA_DIR

logger = logging.getLogger(__name__)

# Strict pattern for content identifiers (lower-case bytes32 hex)
_CONTENT_ID_RE = re.compile(r"^0x[0-9a-f]{64}$")


class ContentIndexError(Exception):
    """Error in content index operations."""


class ContentIndex:
    """File-based index of registered (content id -> piece) mappings.

    Usage:
        index = ContentIndex()
        index.record(content_id, piece_id="baga...", tx_hash="0x...")
        entry = index.get(content_id)
    """

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root).expanduser() if root else Path(DEFAULT_DATA_DIR).expanduser()
        self.index_path = self.root / "index.json"

    @staticmethod
    def _validate_content_id(content_id: str) -> None:
        if not isinstance(content_id, str) or not _CONTENT_ID_RE.match(content_id):
            raise ValueError(
                f"Invalid content id: must be 0x + 64 lowercase hex chars, got {content_id!r}"
            )

    def _read_index(self) -> dict[str, dict[str, Any]]:
        """Read the JSON index. Returns empty dict if missing or corrupt."""
        if not self.index_path.is_file():
            return {}
        try:
            index = json.loads(self.index_path.read_text(encoding="utf-8"))
            if not isinstance(index, dict):
                return {}
            return index
        except (json.JSONDecodeError, OSError):
            logger.warning("Content index %s unreadable, treating as empty", self.index_path)
            return {}

    def _write_index(self, index: dict[str, dict[str, Any]]) -> None:
        """Atomically write the JSON index (temp + rename)."""
        self.root.mkdir(parents=True, exist_ok=True)
        data = json.dumps(index, indent=2, sort_keys=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.root), suffix=".tmp", prefix=".index_")
        try:
            os.write(fd, data.encode("utf-8"))
            os.fsync(fd)
            os.close(fd)
            os.replace(tmp_path, str(self.index_path))
        except Exception:
            try:
                os.close(fd)
            except OSError:
                pass
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def record(
        self,
        content_id: str,
        piece_id: str,
        *,
        tx_hash: str = "",
        dataset_owner: str = "",
        algorithm: int = 0,
        force: bool = False,
    ) -> dict[str, Any]:
        """Record a registration. Returns the stored entry.

        Raises ContentIndexError if the id is already mapped to a different
        piece unless force=True.
        """
        self._validate_content_id(content_id)
        index = self._read_index()
        existing = index.get(content_id)
        if existing and existing.get("piece_id") != piece_id and not force:
            raise ContentIndexError(
                f"Content {content_id[:12]} already mapped to piece "
                f"{existing.get('piece_id', '')[:16]}. Use force=True to overwrite."
            )
        if existing and existing.get("piece_id") == piece_id and existing.get("tx_hash") == tx_hash:
            return existing

        entry = {
            "piece_id": piece_id,
            "tx_hash": tx_hash,
            "dataset_owner": dataset_owner,
            "algorithm": algorithm,
            "recorded_at": datetime.now(timezone.utc).isoformat(),
        }
        index[content_id] = entry
        self._write_index(index)
        return entry

    def get(self, content_id: str) -> dict[str, Any] | None:
        self._validate_content_id(content_id)
        return self._read_index().get(content_id)

    def list(self) -> list[dict[str, Any]]:
        """All entries, sorted by content id, each with a 'content_id' key."""
        result = []
        for content_id, meta in sorted(self._read_index().items()):
            entry = {"content_id": content_id}
            entry.update(meta)
            result.append(entry)
        return result

    def lookup_by_piece(self, piece_id: str) -> str | None:
        """Reverse lookup: content id for a piece id, or None."""
        if not piece_id:
            return None
        for content_id, meta in self._read_index().items():
            if meta.get("piece_id") == piece_id:
                return content_id
        return None
