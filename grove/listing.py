#!/usr/bin/env python3
"""
Listing Module for GROVE

Turns the entries of one directory into a sorted, filtered listing, either
as an HTML page or as tab aligned plain text. Both formats go through the
same pipeline so the visibility policy and ordering never differ between
what a browser and what a script sees.
"""

import os
import posixpath
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional
from urllib.parse import quote

import jinja2

from file_tree import DIRECTORY_SIZE, split_path

PARENT_NAME = ".."


@dataclass(frozen=True)
class ListingEntry:
    """Render-ready projection of one directory child"""
    path: str
    name: str
    size: str = DIRECTORY_SIZE
    is_dir: bool = False


@dataclass(frozen=True)
class Breadcrumb:
    """One ancestor segment of a directory path"""
    path: str
    name: str


@dataclass
class ListingPage:
    """Everything the HTML template needs for one response"""
    version: str
    breadcrumbs: List[Breadcrumb] = field(default_factory=list)
    files: List[ListingEntry] = field(default_factory=list)
    error: Optional[str] = None
    uploads_enabled: bool = False
    files_url: str = "/files"


class ExclusionFilter:
    """
    Decides which entry names are visible.

    Dotfiles are hidden unless include_dotfiles is set; names matched by the
    exclude pattern are hidden regardless of the dotfile setting.
    """

    def __init__(self, include_dotfiles: bool = False, exclude: Optional[re.Pattern] = None):
        self.include_dotfiles = include_dotfiles
        if isinstance(exclude, str):
            exclude = re.compile(exclude)
        self.exclude = exclude

    def include(self, name: str) -> bool:
        if not self.include_dotfiles and name.startswith("."):
            return False
        if self.exclude is not None and self.exclude.search(name):
            return False
        return True

    def include_path(self, path: str) -> bool:
        """Check every segment of a relative path"""
        return all(self.include(part) for part in split_path(path))


def display_name(name: str) -> str:
    """
    Printable form of a filesystem name.

    Names that are not valid UTF-8 come back from the OS with surrogate
    escapes; those bytes are shown as U+FFFD.
    """
    return os.fsencode(name).decode("utf-8", "replace")


def sort_entries(entries: Iterable[ListingEntry]) -> List[ListingEntry]:
    """Directories first, then case-sensitive by name"""
    return sorted(entries, key=lambda e: (not e.is_dir, e.name))


def prepare_entries(
    directory_path: str,
    entries: Iterable[ListingEntry],
    exclusion: ExclusionFilter
) -> List[ListingEntry]:
    """
    Filter, add parent navigation and sort the entries of one directory.

    Args:
        directory_path: Sanitized path of the directory, '' for the root
        entries: Unfiltered children in any order
        exclusion: Visibility policy

    Returns:
        Entries in display order
    """
    files = [entry for entry in entries if exclusion.include(entry.name)]
    if directory_path:
        parent = posixpath.dirname(directory_path)
        files.append(ListingEntry(path=parent, name=PARENT_NAME, is_dir=True))
    return sort_entries(files)


def build_breadcrumbs(directory_path: str) -> List[Breadcrumb]:
    """Split a directory path into (cumulative prefix, name) pairs"""
    breadcrumbs = []
    prefix = ""
    for name in split_path(directory_path):
        prefix = posixpath.join(prefix, name)
        breadcrumbs.append(Breadcrumb(path=prefix, name=name))
    return breadcrumbs


# ============================================================================
# HTML Rendering
# ============================================================================

INDEX_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>GROVE{% if breadcrumbs %} - /{{ breadcrumbs[-1].path }}{% endif %}</title>
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", sans-serif; margin: 0; background: #f6f8fa; color: #24292f; }
        .container { max-width: 960px; margin: 0 auto; padding: 24px; }
        header h1 { margin: 0 0 16px 0; font-size: 24px; }
        header h1 a { color: inherit; text-decoration: none; }
        .breadcrumbs { margin-bottom: 16px; font-family: monospace; }
        .breadcrumbs a { color: #0969da; text-decoration: none; }
        table { width: 100%; border-collapse: collapse; background: #fff; border: 1px solid #d0d7de; border-radius: 6px; }
        th, td { text-align: left; padding: 8px 12px; border-bottom: 1px solid #d0d7de; font-family: monospace; }
        td.size { text-align: right; white-space: nowrap; }
        td a { color: #0969da; text-decoration: none; }
        .directory a { font-weight: bold; }
        .error { padding: 16px; background: #ffebe9; border: 1px solid #ff8182; border-radius: 6px; }
        .upload { margin-top: 16px; padding: 12px; background: #fff; border: 1px solid #d0d7de; border-radius: 6px; }
        footer { margin-top: 24px; color: #57606a; font-size: 12px; }
    </style>
</head>
<body>
    <div class="container">
        <header>
            <h1><a href="{{ files_url }}">GROVE</a></h1>
        </header>
{% if error %}
        <div class="error">{{ error }}</div>
{% else %}
        <div class="breadcrumbs">
            <a href="{{ files_url }}">/</a>{% for crumb in breadcrumbs %}<a href="{{ link(crumb.path) }}">{{ crumb.name|display }}</a>/{% endfor %}
        </div>
        <table>
            <thead>
                <tr><th>Name</th><th>Size</th></tr>
            </thead>
            <tbody>
{% for file in files %}
                <tr class="{{ 'directory' if file.is_dir else 'file' }}">
                    <td><a href="{{ link(file.path) }}">{{ file.name|display }}{% if file.is_dir %}/{% endif %}</a></td>
                    <td class="size">{{ '-' if file.is_dir else file.size }}</td>
                </tr>
{% endfor %}
            </tbody>
        </table>
{% if uploads_enabled %}
        <form class="upload" method="post" action="{{ files_url }}" enctype="multipart/form-data">
            <input type="file" name="file" required>
            <button type="submit">Upload</button>
        </form>
{% endif %}
{% endif %}
        <footer>GROVE {{ version }}</footer>
    </div>
</body>
</html>
"""

_environment = jinja2.Environment(
    loader=jinja2.DictLoader({"index.html": INDEX_TEMPLATE}),
    autoescape=True,
    trim_blocks=True,
)
_environment.filters["display"] = display_name


def render_html(page: ListingPage) -> str:
    """Render a listing page, or its error variant when page.error is set"""
    def link(path: str) -> str:
        if not path:
            return page.files_url
        return f"{page.files_url}/{quote(os.fsencode(path))}"

    template = _environment.get_template("index.html")
    return template.render(
        breadcrumbs=page.breadcrumbs,
        files=page.files,
        version=page.version,
        error=page.error,
        uploads_enabled=page.uploads_enabled,
        files_url=page.files_url,
        link=link,
    )


# ============================================================================
# Plain Text Rendering
# ============================================================================

def align_tabs(lines: List[str], padding: int = 1) -> List[str]:
    """
    Replace tab separated cells with space padded columns.

    Consecutive lines that contain a tab form one block; each column in a
    block is as wide as its widest cell plus padding. The text after the
    last tab of a line is not part of any column.
    """
    aligned: List[str] = []
    block: List[List[str]] = []

    def flush():
        widths: List[int] = []
        for cells in block:
            for i, cell in enumerate(cells[:-1]):
                if i == len(widths):
                    widths.append(0)
                widths[i] = max(widths[i], len(cell))
        for cells in block:
            padded = [cell.ljust(widths[i] + padding) for i, cell in enumerate(cells[:-1])]
            aligned.append("".join(padded) + cells[-1])
        block.clear()

    for line in lines:
        if "\t" in line:
            block.append(line.split("\t"))
        else:
            flush()
            aligned.append(line)
    flush()
    return aligned


def render_text(files: List[ListingEntry]) -> str:
    """One line per entry: 'name/' for directories, 'name<TAB>size' for files"""
    lines = []
    for file in files:
        if file.is_dir:
            lines.append(f"{display_name(file.name)}/")
        else:
            lines.append(f"{display_name(file.name)}\t{file.size}")
    return "".join(line + "\n" for line in align_tabs(lines))
