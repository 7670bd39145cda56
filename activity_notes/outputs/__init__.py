"""Daily note rendering and document storage."""

from activity_notes.outputs.document_store import DocumentStore, FileSystemDocumentStore
from activity_notes.outputs.note_writer import BLOCK_SEPARATOR, NoteWriter, compose, render

__all__ = [
    "BLOCK_SEPARATOR",
    "DocumentStore",
    "FileSystemDocumentStore",
    "NoteWriter",
    "compose",
    "render",
]
