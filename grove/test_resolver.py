#!/usr/bin/env python3
"""
Tests for the resolver module, in both on-demand and snapshot mode
"""

import os

import pytest

import resolver
from errors import NotFoundError, UnreadableDirectoryError
from file_tree import build_file_tree
from listing import ExclusionFilter, prepare_entries, render_text
from resolver import DiskResolver, Resolver, SnapshotResolver, TargetKind, make_resolver


@pytest.fixture
def served(tmp_path):
    (tmp_path / "docs").mkdir()
    (tmp_path / "docs" / "a.txt").write_bytes(b"0123456789")
    (tmp_path / "readme.md").write_bytes(b"hello")
    (tmp_path / ".hidden").write_bytes(b"secret")
    return tmp_path


@pytest.fixture(params=["disk", "snapshot"])
def make(request):
    def factory(root, exclusion=None):
        exclusion = exclusion or ExclusionFilter()
        return make_resolver(str(root), exclusion, snapshot=request.param == "snapshot")
    return factory


def test_make_resolver_modes(served):
    assert isinstance(make_resolver(str(served), ExclusionFilter()), DiskResolver)
    assert isinstance(make_resolver(str(served), ExclusionFilter(), snapshot=True), SnapshotResolver)


def test_both_modes_satisfy_resolver_protocol(served, make):
    assert isinstance(make(served), Resolver)


def test_root_listing_scenario(served, make):
    target = make(served).resolve("/")
    assert target.kind is TargetKind.DIRECTORY
    assert target.path == ""

    files = prepare_entries(target.path, target.entries, ExclusionFilter())
    assert [(f.name, f.size) for f in files] == [("docs", " - "), ("readme.md", "5.00B")]
    assert render_text(files).splitlines() == ["docs/", "readme.md 5.00B"]


def test_subdirectory_entries(served, make):
    target = make(served).resolve("docs")
    assert target.kind is TargetKind.DIRECTORY
    assert target.path == "docs"
    assert [(e.path, e.name, e.size) for e in target.entries] == [("docs/a.txt", "a.txt", "10.00B")]


def test_file_target(served, make):
    target = make(served).resolve("/docs/a.txt")
    assert target.kind is TargetKind.FILE
    assert target.full_path == os.path.join(str(served), "docs", "a.txt")
    assert target.size == 10


def test_missing_paths_are_not_found(served, make):
    resolve = make(served).resolve
    for path in ("missing", "docs/missing", "readme.md/extra", "DOCS"):
        with pytest.raises(NotFoundError):
            resolve(path)


def test_traversal_stays_inside_root(served, make):
    resolve = make(served / "docs").resolve
    target = resolve("../../a.txt")
    assert target.kind is TargetKind.FILE
    assert target.full_path == os.path.join(str(served), "docs", "a.txt")

    with pytest.raises(NotFoundError):
        resolve("../readme.md")


def test_excluded_names_cannot_be_fetched_directly(served, make):
    with pytest.raises(NotFoundError):
        make(served).resolve(".hidden")

    target = make(served, ExclusionFilter(include_dotfiles=True)).resolve(".hidden")
    assert target.kind is TargetKind.FILE

    with pytest.raises(NotFoundError):
        make(served, ExclusionFilter(exclude="^docs$")).resolve("docs/a.txt")


def test_single_file_root(served, make):
    target = make(served / "readme.md").resolve("/")
    assert target.kind is TargetKind.FILE
    assert target.size == 5

    with pytest.raises(NotFoundError):
        make(served / "readme.md").resolve("anything")


def test_disk_resolver_unreadable_directory(served, monkeypatch):
    locked = str(served / "docs")
    real_scandir = os.scandir

    def fake_scandir(path):
        if os.fspath(path) == locked:
            raise PermissionError(13, "Permission denied", locked)
        return real_scandir(path)

    monkeypatch.setattr(resolver.os, "scandir", fake_scandir)

    with pytest.raises(UnreadableDirectoryError):
        DiskResolver(str(served), ExclusionFilter()).resolve("docs")
    assert DiskResolver(str(served), ExclusionFilter()).resolve("/").kind is TargetKind.DIRECTORY


def test_snapshot_resolver_unreadable_directory(served):
    tree = build_file_tree(str(served))
    docs = tree.child("docs")
    docs.is_bad_dir = True
    docs.error = "permission denied"
    docs.children = []

    with pytest.raises(UnreadableDirectoryError):
        SnapshotResolver(tree, ExclusionFilter()).resolve("docs")


def test_disk_resolver_sees_new_files(served):
    disk = DiskResolver(str(served), ExclusionFilter())
    snapshot = SnapshotResolver(build_file_tree(str(served)), ExclusionFilter())
    (served / "new.txt").write_bytes(b"new")

    assert disk.resolve("new.txt").size == 3
    with pytest.raises(NotFoundError):
        snapshot.resolve("new.txt")


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))
