"""Credential store: the session record on disk.

One JSON file per client instance. Writes go to a temporary sibling that is
fsynced and then renamed over the target, so a reader sees either the old
record or the new one. The file is chmod 0o600 since it carries the access
token and the storage passphrase.

A missing file is the cold-start signal (SessionNotFound). A file that exists
but does not decode to a complete record is CorruptSession, which callers
treat as fatal.
"""

import json
import logging
import os
import threading
from pathlib import Path

from matrixsync.errors import CorruptSession, SessionIOError, SessionNotFound
from matrixsync.session.models import CheckpointToken, SessionRecord

logger = logging.getLogger(__name__)


class CredentialStore:
    """Load and save the SessionRecord at a fixed path.

    All operations hold a re-entrant lock, so the store can be shared by
    several callers without interleaving writes.
    """

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()
        self._lock = threading.RLock()

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> SessionRecord:
        """Read the stored record.

        Raises:
            SessionNotFound: No file at the path.
            CorruptSession: The file is not a complete record.
            SessionIOError: Any other OS-level failure.
        """
        with self._lock:
            try:
                raw = self.path.read_text(encoding="utf-8")
            except FileNotFoundError as e:
                raise SessionNotFound(f"No session stored at {self.path}") from e
            except OSError as e:
                raise SessionIOError(f"Cannot read {self.path}: {e}") from e

            try:
                return SessionRecord.from_dict(json.loads(raw))
            except (json.JSONDecodeError, ValueError) as e:
                raise CorruptSession(
                    f"Session file {self.path} is corrupt: {e}") from e

    def save(self, record: SessionRecord) -> None:
        """Replace the stored record with `record`."""
        with self._lock:
            content = json.dumps(record.to_dict(), indent=2, sort_keys=True)
            tmp_path = self.path.with_name(self.path.name + ".tmp")
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(content)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_path, self.path)
            except OSError as e:
                try:
                    tmp_path.unlink(missing_ok=True)
                except OSError as cleanup_error:
                    logger.warning(f"Could not remove {tmp_path}: {cleanup_error}")
                raise SessionIOError(f"Cannot write {self.path}: {e}") from e
            logger.debug(f"Session record written to {self.path}")

    def save_checkpoint(self, token: CheckpointToken) -> SessionRecord:
        """Rewrite the stored record with a new sync token.

        Read-modify-write under the lock; returns the record as written.
        """
        with self._lock:
            record = self.load().with_checkpoint(token)
            self.save(record)
            return record

    def delete(self) -> bool:
        """Remove the session file. Returns False if there was none."""
        with self._lock:
            try:
                self.path.unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                raise SessionIOError(f"Cannot delete {self.path}: {e}") from e
            return True
