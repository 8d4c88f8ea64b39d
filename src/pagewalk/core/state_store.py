"""
Persistence of rate limit state between runs.
[CTX:PBI-1:1-3:STATE]

The on-disk format is two whitespace separated integers, ``remaining
reset_epoch``. The window limit is not stored; it is re-read from the next
response. There is no locking: two processes sharing one state file race.
"""
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from .rate_limiter import RateLimitState

logger = logging.getLogger(__name__)


class StateStore(ABC):
    """Load/save interface for rate limit state."""

    @abstractmethod
    def load(self) -> Optional[RateLimitState]:
        """
        Read previously saved state.

        Returns:
            RateLimitState, or None when nothing usable is stored
        """
        pass

    @abstractmethod
    def save(self, state: RateLimitState) -> None:
        """Write state synchronously, before the next request starts."""
        pass


class NullStateStore(StateStore):
    """Store used when persistence is disabled."""

    def load(self) -> Optional[RateLimitState]:
        return None

    def save(self, state: RateLimitState) -> None:
        pass


class FileStateStore(StateStore):
    """
    State stored in a small text file.

    Writes go to a temporary file in the same directory which is then
    renamed over the target, so a killed process leaves either the old or
    the new snapshot.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> Optional[RateLimitState]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug(f"[CTX:PBI-1:1-3:STATE] No state file at {self.path}")
            return None
        except OSError as e:
            logger.warning(f"[CTX:PBI-1:1-3:STATE] Cannot read {self.path}: {e}")
            return None

        fields = text.split()
        if len(fields) != 2:
            logger.warning(
                f"[CTX:PBI-1:1-3:STATE] Ignoring malformed state file {self.path}"
            )
            return None

        try:
            remaining, reset_epoch = int(fields[0]), int(fields[1])
        except ValueError:
            logger.warning(
                f"[CTX:PBI-1:1-3:STATE] Ignoring non-numeric state file {self.path}"
            )
            return None

        if remaining < 0:
            remaining = 0

        logger.debug(
            f"[CTX:PBI-1:1-3:STATE] Loaded remaining={remaining} reset={reset_epoch}"
        )
        return RateLimitState(remaining=remaining, reset_epoch=reset_epoch)

    def save(self, state: RateLimitState) -> None:
        if state.remaining is None or state.reset_epoch is None:
            logger.debug(
                "[CTX:PBI-1:1-3:STATE] Window unknown, leaving state file untouched"
            )
            return

        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", dir=directory
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(f"{state.remaining} {state.reset_epoch}\n")
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


def open_state_store(path: str | Path | None) -> StateStore:
    """File backed store for a path, or a no-op store when path is None."""
    if path is None:
        return NullStateStore()
    return FileStateStore(path)
