"""Transcript file change source."""

from csl.watcher.files import FileEvent, FileWatcher, parse_file_path

__all__ = ["FileEvent", "FileWatcher", "parse_file_path"]
