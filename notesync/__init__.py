"""NoteSync - note synchronization and conflict-resolution engine."""

from notesync.version import get_version

__version__ = get_version()

__all__ = ["__version__"]
