"""Durable watermark storage."""

from __future__ import annotations

import json
import os
from pathlib import Path
from tempfile import NamedTemporaryFile

import structlog
from pydantic import ValidationError

from activity_notes.errors import ConfigCorruptError, WatermarkWriteError
from activity_notes.models import Watermark

logger = structlog.get_logger()


class WatermarkStore:
    """Persist the pipeline watermark as a small JSON document.

    Writes go to a temporary file in the same directory which is then
    renamed over the target, so a crash never leaves a half-written file.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def get(self) -> Watermark | None:
        """Load the watermark, or None if it was never written."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise ConfigCorruptError(f"Cannot read watermark at {self.path}: {e}") from e

        try:
            return Watermark.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            raise ConfigCorruptError(f"Malformed watermark at {self.path}: {e}") from e

    def set(self, watermark: Watermark) -> None:
        """Atomically replace the stored watermark."""
        encoded = watermark.model_dump_json(indent=2)
        tmp_path: Path | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=str(self.path.parent),
                prefix=f".{self.path.name}.",
                delete=False,
            ) as tmp:
                tmp_path = Path(tmp.name)
                tmp.write(encoded)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            if tmp_path is not None and tmp_path.exists():
                tmp_path.unlink(missing_ok=True)
            raise WatermarkWriteError(f"Cannot write watermark at {self.path}: {e}") from e

        logger.debug(
            "Watermark stored",
            path=str(self.path),
            last_checked_at=watermark.last_checked_at.isoformat(),
        )
