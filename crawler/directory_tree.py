"""Walk a local directory as if it were a URL space, and summarise it."""

from __future__ import annotations

import os
from collections import Counter
from typing import Any, Iterable


def _excluded(name: str, patterns: Iterable[str]) -> bool:
    lowered = name.lower()
    return any(pattern.lower() in lowered for pattern in patterns if pattern)


def _extension(name: str) -> str:
    return os.path.splitext(name)[1].lower().lstrip(".")


def walk_directory_tree(
    root_path: str,
    *,
    max_depth: int = 5,
    allowed_extensions: Iterable[str] = ("html", "htm", "php", "asp", "aspx"),
    exclude_patterns: Iterable[str] = ("private", "admin", "backup"),
) -> dict[str, Any]:
    """Return ``{name, type, children}`` nodes for ``root_path``.

    Raises :class:`FileNotFoundError` / :class:`NotADirectoryError` when the
    root is not a directory.
    """

    allowed = {ext.lower().lstrip(".") for ext in allowed_extensions}
    excludes = list(exclude_patterns)
    if not os.path.isdir(root_path):
        raise NotADirectoryError(root_path)

    def _walk(path: str, depth: int) -> dict[str, Any] | None:
        if depth > max_depth:
            return None
        node: dict[str, Any] = {
            "name": os.path.basename(os.path.normpath(path)),
            "type": "directory",
            "children": [],
        }
        with os.scandir(path) as entries:
            for entry in sorted(entries, key=lambda e: e.name):
                if _excluded(entry.name, excludes):
                    continue
                if entry.is_dir(follow_symlinks=False):
                    child = _walk(entry.path, depth + 1)
                    if child is not None:
                        node["children"].append(child)
                elif entry.is_file() and _extension(entry.name) in allowed:
                    node["children"].append({"name": entry.name, "type": "file"})
        return node

    return _walk(root_path, 0) or {"name": os.path.basename(root_path), "type": "directory", "children": []}


def analyze_directory_tree(tree: dict[str, Any]) -> dict[str, Any]:
    totals = {"files": 0, "folders": 0, "max_depth": 0}
    distribution: Counter[str] = Counter()

    def _visit(node: dict[str, Any], depth: int) -> None:
        if node.get("type") == "file":
            totals["files"] += 1
            distribution[_extension(node["name"]) or "unknown"] += 1
        elif node.get("type") == "directory":
            totals["folders"] += 1
            totals["max_depth"] = max(totals["max_depth"], depth)
            for child in node.get("children") or []:
                _visit(child, depth + 1)

    _visit(tree, 0)
    folders = totals["folders"]
    return {
        "total_files": totals["files"],
        "total_folders": folders,
        "max_depth": totals["max_depth"],
        "average_files_per_folder": totals["files"] / folders if folders else 0.0,
        "most_common_file_type": distribution.most_common(1)[0][0] if distribution else "",
        "file_type_distribution": dict(distribution),
    }
