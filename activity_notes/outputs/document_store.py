"""Document storage for daily notes."""

from __future__ import annotations

import asyncio
import os
import threading
from pathlib import Path, PurePosixPath
from tempfile import NamedTemporaryFile
from typing import Protocol

import structlog

logger = structlog.get_logger()


class WriteAborted(Exception):
    """A write was cancelled before it replaced the target."""


class DocumentStore(Protocol):
    """Host document storage, addressed by vault-relative paths."""

    async def exists(self, path: str) -> bool: ...

    async def create(self, path: str, content: str) -> None: ...

    async def read(self, path: str) -> str: ...

    async def modify(self, path: str, new_content: str) -> None: ...


class FileSystemDocumentStore:
    """Markdown vault on the local filesystem.

    Every write lands in a temporary file next to the target and is renamed
    over it, so readers see either the old or the new document.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def resolve(self, path: str) -> Path:
        """Map a vault-relative path to a filesystem path inside the root."""
        relative = PurePosixPath(path)
        if relative.is_absolute() or ".." in relative.parts or not relative.parts:
            raise ValueError(f"Invalid vault path: {path!r}")
        return self.root.joinpath(*relative.parts)

    async def exists(self, path: str) -> bool:
        return self.resolve(path).is_file()

    async def read(self, path: str) -> str:
        target = self.resolve(path)
        return await asyncio.to_thread(target.read_text, encoding="utf-8")

    async def create(self, path: str, content: str) -> None:
        target = self.resolve(path)
        if target.exists():
            raise FileExistsError(f"Document already exists: {path}")
        await self._write(target, content)
        logger.info("Document created", path=path)

    async def modify(self, path: str, new_content: str) -> None:
        target = self.resolve(path)
        if not target.is_file():
            raise FileNotFoundError(f"Document does not exist: {path}")
        await self._write(target, new_content)
        logger.info("Document modified", path=path)

    async def _write(self, target: Path, content: str) -> None:
        """Write in a worker thread; cancellation waits for that thread.

        A cancelled write either completed before cancellation was noticed
        or left the target untouched, and the caller only regains control
        once the thread is done, so nothing lands on disk afterwards.
        """
        abort = threading.Event()
        worker = asyncio.ensure_future(asyncio.to_thread(self._atomic_write, target, content, abort))
        try:
            await asyncio.shield(worker)
        except asyncio.CancelledError:
            abort.set()
            while not worker.done():
                try:
                    await asyncio.wait([worker])
                except asyncio.CancelledError:
                    continue
            if not worker.cancelled() and isinstance(worker.exception(), WriteAborted):
                logger.info("Document write abandoned", path=str(target))
            raise

    @staticmethod
    def _atomic_write(target: Path, content: str, abort: threading.Event | None = None) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        with NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=str(target.parent),
            prefix=f".{target.name}.",
            suffix=".tmp",
            delete=False,
        ) as tmp:
            tmp_path = Path(tmp.name)
            try:
                tmp.write(content)
                tmp.flush()
                os.fsync(tmp.fileno())
            except OSError:
                tmp.close()
                tmp_path.unlink(missing_ok=True)
                raise
        if abort is not None and abort.is_set():
            tmp_path.unlink(missing_ok=True)
            raise WriteAborted(f"Write to {target} was cancelled")
        try:
            os.replace(tmp_path, target)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
