#!/usr/bin/env python3
"""
Request path resolution for GROVE

A request path is resolved exactly once into a Target: either a directory
with its (unfiltered) entries or a regular file ready to stream. Two
resolvers share that contract. DiskResolver reads the filesystem on every
call; SnapshotResolver answers from a tree built once at startup.
"""

import logging
import os
import posixpath
import stat
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Protocol, runtime_checkable

from errors import FileIOError, NotFoundError, UnreadableDirectoryError
from file_tree import (
    DIRECTORY_SIZE,
    TreeNode,
    build_file_tree,
    find_match,
    format_size,
    sanitize_path,
)
from listing import ExclusionFilter, ListingEntry

logger = logging.getLogger(__name__)


class TargetKind(Enum):
    """What a request path points at"""
    DIRECTORY = "directory"
    FILE = "file"


@dataclass
class Target:
    """Result of resolving one request path"""
    kind: TargetKind
    path: str  # sanitized, relative to the served root; '' is the root
    full_path: str
    size: int = 0
    entries: List[ListingEntry] = field(default_factory=list)


@runtime_checkable
class Resolver(Protocol):
    """Maps a request path to a Target or raises a GroveError"""

    def resolve(self, request_path: str) -> Target:
        ...


class DiskResolver:
    """Resolves request paths by reading the filesystem on every call"""

    def __init__(self, root: str, exclusion: ExclusionFilter):
        self.root = os.path.abspath(root)
        self.exclusion = exclusion

    def resolve(self, request_path: str) -> Target:
        path = sanitize_path(request_path)
        if not self.exclusion.include_path(path):
            raise NotFoundError(f"file not found: {path}")

        full_path = os.path.join(self.root, *path.split('/')) if path else self.root
        try:
            info = os.stat(full_path)
        except (FileNotFoundError, NotADirectoryError) as e:
            raise NotFoundError(f"file not found: {path}") from e
        except OSError as e:
            raise FileIOError(f"{path}: {e.strerror}") from e

        if stat.S_ISDIR(info.st_mode):
            return Target(
                kind=TargetKind.DIRECTORY,
                path=path,
                full_path=full_path,
                entries=self._read_entries(path, full_path),
            )
        if stat.S_ISREG(info.st_mode):
            return Target(kind=TargetKind.FILE, path=path, full_path=full_path, size=info.st_size)
        raise NotFoundError(f"not a regular file: {path}")

    def _read_entries(self, path: str, full_path: str) -> List[ListingEntry]:
        try:
            with os.scandir(full_path) as it:
                dir_entries = list(it)
        except OSError as e:
            raise UnreadableDirectoryError(f"cannot read directory /{path}: {e.strerror}") from e

        entries = []
        for entry in dir_entries:
            try:
                info = entry.stat()
            except OSError as e:
                logger.warning(f"Skipping {entry.path}: {e}")
                continue
            is_dir = stat.S_ISDIR(info.st_mode)
            entries.append(ListingEntry(
                path=posixpath.join(path, entry.name),
                name=entry.name,
                size=DIRECTORY_SIZE if is_dir else format_size(info.st_size),
                is_dir=is_dir,
            ))
        return entries


class SnapshotResolver:
    """Resolves request paths against a prebuilt, read-only TreeNode graph"""

    def __init__(self, tree: TreeNode, exclusion: ExclusionFilter):
        self.tree = tree
        self.exclusion = exclusion

    def resolve(self, request_path: str) -> Target:
        path = sanitize_path(request_path)
        if not self.exclusion.include_path(path):
            raise NotFoundError(f"file not found: {path}")

        node = find_match(self.tree, path)
        if not node.is_dir:
            return Target(
                kind=TargetKind.FILE,
                path=path,
                full_path=node.path,
                size=self._file_size(node),
            )
        if node.is_bad_dir:
            raise UnreadableDirectoryError(f"cannot read directory /{path}: {node.error}")

        entries = [
            ListingEntry(
                path=posixpath.join(path, child.name),
                name=child.name,
                size=child.size,
                is_dir=child.is_dir,
            )
            for child in node.children
        ]
        return Target(kind=TargetKind.DIRECTORY, path=path, full_path=node.path, entries=entries)

    @staticmethod
    def _file_size(node: TreeNode) -> int:
        # Snapshot nodes only carry the formatted size
        try:
            info = os.stat(node.path)
        except FileNotFoundError as e:
            raise NotFoundError(f"file not found: {node.path}") from e
        except OSError as e:
            raise FileIOError(f"{node.path}: {e.strerror}") from e
        if not stat.S_ISREG(info.st_mode):
            raise NotFoundError(f"not a regular file: {node.path}")
        return info.st_size


def make_resolver(
    root: str,
    exclusion: ExclusionFilter,
    snapshot: bool = False,
    tree: Optional[TreeNode] = None
) -> Resolver:
    """Pick the resolver for the configured mode"""
    if not snapshot:
        return DiskResolver(root, exclusion)
    if tree is None:
        tree = build_file_tree(root)
    return SnapshotResolver(tree, exclusion)
