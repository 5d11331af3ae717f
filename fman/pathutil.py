"""Path normalisation and overlap detection for scan targets."""

from __future__ import annotations

import os
import sys
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

_CASE_INSENSITIVE = sys.platform in ("win32", "darwin")
_NORMALIZE_ERRORS = (TypeError, ValueError, OSError)


class ConflictType(str, Enum):
    """How two scan paths overlap."""

    DUPLICATE = "duplicate"
    PARENT_CHILD = "parent_child"
    CHILD_PARENT = "child_parent"
    INVALID = "invalid"

    def __str__(self) -> str:
        return self.value


@dataclass
class PathConflict:
    """An overlap between a new path and an existing one."""

    type: ConflictType | str = ""
    existing_path: str = ""
    conflict_path: str = ""
    reason: str = ""

    def __str__(self) -> str:
        return (
            f"{self.type} conflict: {self.reason} "
            f"(existing: {self.existing_path}, conflict: {self.conflict_path})"
        )

    def to_dict(self) -> dict[str, str]:
        return {
            "type": str(self.type),
            "existing_path": self.existing_path,
            "conflict_path": self.conflict_path,
            "reason": self.reason,
        }


@dataclass
class PathOptimizationResult:
    """Outcome of reducing a list of paths to a non-overlapping set."""

    optimized_paths: list[str] = field(default_factory=list)
    removed_paths: list[str] = field(default_factory=list)
    conflicts: list[PathConflict] = field(default_factory=list)

    def __str__(self) -> str:
        return (
            f"Optimized: {len(self.optimized_paths)} paths, "
            f"Removed: {len(self.removed_paths)} paths, "
            f"Conflicts: {len(self.conflicts)}"
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "optimized_paths": list(self.optimized_paths),
            "removed_paths": list(self.removed_paths),
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
        }


def _platform_form(path: str) -> str:
    normalized = path.replace(os.sep, "/")
    if _CASE_INSENSITIVE:
        normalized = normalized.lower()
    if len(normalized) > 1 and normalized.endswith("/"):
        normalized = normalized[:-1]
    return normalized


def _resolve(absolute: str) -> str:
    try:
        return os.path.realpath(absolute, strict=True)
    except (OSError, ValueError):
        pass
    # The path may not exist yet; resolve its directory for consistency.
    try:
        directory = os.path.realpath(os.path.dirname(absolute), strict=True)
    except (OSError, ValueError):
        return absolute
    return os.path.join(directory, os.path.basename(absolute))


class PathChecker:
    """Normalises paths (with a cache) and finds overlaps between them."""

    def __init__(self) -> None:
        self._cache: dict[str, str] = {}
        self._lock = threading.Lock()

    def normalize_path(self, path: str | os.PathLike[str]) -> str:
        """Absolute, symlink-resolved, slash-separated form of ``path``.

        Raises TypeError for non-text paths and ValueError when the
        absolute path cannot be determined.
        """
        raw = os.fspath(path)
        if not isinstance(raw, str):
            raise TypeError(f"path must be text, got {type(raw).__name__}")
        with self._lock:
            cached = self._cache.get(raw)
        if cached is not None:
            return cached

        try:
            absolute = os.path.abspath(os.path.normpath(raw or "."))
        except OSError as exc:
            raise ValueError(f"failed to get absolute path for {raw}: {exc}") from exc

        normalized = _platform_form(_resolve(absolute))
        with self._lock:
            self._cache[raw] = normalized
        return normalized

    def is_parent_path(self, parent_path: str, child_path: str) -> bool:
        """True if ``child_path`` lies strictly below ``parent_path``."""
        parent = self.normalize_path(parent_path)
        child = self.normalize_path(child_path)
        if parent == child:
            return False
        prefix = parent if parent.endswith("/") else parent + "/"
        return child.startswith(prefix)

    def has_conflict(
        self, new_path: str, existing_paths: Iterable[str]
    ) -> PathConflict | None:
        """First overlap between ``new_path`` and ``existing_paths``, or None."""
        normalized_new = self.normalize_path(new_path)
        for existing in existing_paths:
            try:
                normalized_existing = self.normalize_path(existing)
            except _NORMALIZE_ERRORS:
                continue

            if normalized_new == normalized_existing:
                return PathConflict(
                    ConflictType.DUPLICATE, existing, new_path, "identical paths"
                )
            if self._safe_is_parent(new_path, existing):
                return PathConflict(
                    ConflictType.PARENT_CHILD,
                    existing,
                    new_path,
                    "new path is parent of existing path",
                )
            if self._safe_is_parent(existing, new_path):
                return PathConflict(
                    ConflictType.CHILD_PARENT,
                    existing,
                    new_path,
                    "new path is child of existing path",
                )
        return None

    def optimize_paths(self, paths: Iterable[str]) -> PathOptimizationResult:
        """Drop duplicates, unusable paths and paths covered by a parent."""
        result = PathOptimizationResult()
        by_normalized: dict[str, str] = {}

        for path in paths:
            try:
                normalized = self.normalize_path(path)
            except _NORMALIZE_ERRORS as exc:
                result.removed_paths.append(path)
                result.conflicts.append(
                    PathConflict(
                        ConflictType.INVALID,
                        "",
                        path,
                        f"normalization failed: {exc}",
                    )
                )
                continue
            if normalized in by_normalized:
                result.removed_paths.append(path)
                result.conflicts.append(
                    PathConflict(
                        ConflictType.DUPLICATE,
                        by_normalized[normalized],
                        path,
                        "duplicate after normalization",
                    )
                )
                continue
            by_normalized[normalized] = path

        unique = list(by_normalized.values())
        keep = {path: True for path in unique}

        for candidate in unique:
            if not keep[candidate]:
                continue
            for other in unique:
                if other is candidate or not keep[other]:
                    continue
                if self._safe_is_parent(candidate, other):
                    keep[other] = False
                    result.removed_paths.append(other)
                    result.conflicts.append(
                        PathConflict(
                            ConflictType.CHILD_PARENT,
                            candidate,
                            other,
                            "child path removed in favor of parent",
                        )
                    )

        result.optimized_paths = [path for path in unique if keep[path]]
        return result

    def clear_cache(self) -> None:
        """Forget every cached normalisation."""
        with self._lock:
            self._cache = {}

    def cache_size(self) -> int:
        """Number of cached normalisations."""
        with self._lock:
            return len(self._cache)

    def _safe_is_parent(self, parent: str, child: str) -> bool:
        try:
            return self.is_parent_path(parent, child)
        except _NORMALIZE_ERRORS:
            return False