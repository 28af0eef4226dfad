"""Per-session filesystem locations."""

from __future__ import annotations

import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class SessionPaths:
    """Scratch locations owned by one agent session.

    The temporary directory lives at
    ``<tmp>/.toolrun/session_YYYYMMDD_HHMMSS/tmp`` and is exported to
    sandboxed commands as ``TMPDIR``.
    """

    session_id: str
    root: Path

    @property
    def temp_dir(self) -> Path:
        return self.root / "tmp"

    @classmethod
    def create(cls, base: Optional[Path] = None, now: Optional[datetime] = None) -> "SessionPaths":
        base = base or Path(tempfile.gettempdir()) / ".toolrun"
        session_id = (now or datetime.now()).strftime("session_%Y%m%d_%H%M%S")
        return cls(session_id=session_id, root=base / session_id)

    def ensure(self) -> Path:
        """Create the temporary directory (owner-only) and return it."""
        self.temp_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        return self.temp_dir
