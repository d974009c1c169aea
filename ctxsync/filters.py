from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path, PurePosixPath
from typing import Iterable

import pathspec


logger = logging.getLogger(__name__)

GITIGNORE_FILENAME = ".gitignore"
CTXSYNCIGNORE_FILENAME = ".ctxsyncignore"
IGNORE_FILENAMES = (GITIGNORE_FILENAME, CTXSYNCIGNORE_FILENAME)

# Applied after every .gitignore, so only .ctxsyncignore files and
# user patterns can re-include these.
DEFAULT_IGNORE_PATTERNS = (
    ".git/",
    ".hg/",
    ".svn/",
    "node_modules/",
    "__pycache__/",
    ".venv/",
    "venv/",
    ".tox/",
    ".mypy_cache/",
    ".pytest_cache/",
    "target/",
    ".DS_Store",
    "*.pyc",
    ".env",
    ".env.*",
    "*.pem",
    "*.key",
    "*.p12",
    "id_rsa",
    "id_ed25519",
    ".ctxsync.json",
)


def _normalize_pattern(pattern: str) -> str:
    normalized = pattern.strip().replace("\\", "/")
    if normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def _valid_patterns(lines: Iterable[str], source: str) -> list[str]:
    patterns = []
    for line in lines:
        pattern = _normalize_pattern(line)
        if not pattern:
            continue
        try:
            pathspec.GitIgnoreSpec.from_lines([pattern])
        except ValueError as exc:
            logger.warning("Skipping invalid ignore pattern %r in %s: %s", pattern, source, exc)
            continue
        patterns.append(pattern)
    return patterns


@dataclass(frozen=True, slots=True)
class IgnoreLayer:
    """Gitignore-style rules that apply below ``base``.

    ``base`` is the workspace-relative directory holding the ignore file
    (``""`` for the root); patterns are matched relative to it.
    """

    spec: pathspec.GitIgnoreSpec
    base: str = ""

    @classmethod
    def from_lines(
        cls, lines: Iterable[str], base: str = "", *, source: str = "patterns"
    ) -> "IgnoreLayer | None":
        patterns = _valid_patterns(lines, source)
        if not patterns:
            return None
        spec = pathspec.GitIgnoreSpec.from_lines(patterns)
        return cls(spec=spec, base=base)

    def check(self, path: str, *, is_dir: bool) -> bool | None:
        """True if ignored, False if re-included, None if no rule matched."""
        if self.base:
            prefix = self.base + "/"
            if not path.startswith(prefix):
                return None
            path = path[len(prefix) :]
        if is_dir:
            path += "/"
        return self.spec.check_file(path).include


@dataclass(frozen=True, slots=True)
class PathFilter:
    """Layered ignore policy.

    Layers are consulted in this order and the last one with a matching
    rule decides: ``.gitignore`` files (root first, deeper directories
    later), the built-in defaults, ``.ctxsyncignore`` files, then patterns
    from the workspace config. A file is also ignored when any of its parent
    directories is, so a ``!pattern`` cannot reach into an ignored directory.
    """

    include_spec: pathspec.GitIgnoreSpec | None = None
    gitignore_layers: tuple[IgnoreLayer, ...] = ()
    default_layers: tuple[IgnoreLayer, ...] = ()
    ctxsyncignore_layers: tuple[IgnoreLayer, ...] = ()
    user_layers: tuple[IgnoreLayer, ...] = ()
    loaded_dirs: frozenset[str] = frozenset()

    def _layers(self) -> Iterable[IgnoreLayer]:
        yield from self.gitignore_layers
        yield from self.default_layers
        yield from self.ctxsyncignore_layers
        yield from self.user_layers

    def _ignored_by_rules(self, path: str, *, is_dir: bool) -> bool:
        ignored = False
        for layer in self._layers():
            verdict = layer.check(path, is_dir=is_dir)
            if verdict is not None:
                ignored = verdict
        return ignored

    def ignores_dir(self, path: str) -> bool:
        return self._ignored_by_rules(path, is_dir=True)

    def ignores_file(self, path: str) -> bool:
        parts = PurePosixPath(path).parts
        for depth in range(1, len(parts)):
            if self.ignores_dir("/".join(parts[:depth])):
                return True
        return self._ignored_by_rules(path, is_dir=False)

    def matches(self, path: str) -> bool:
        """True when ``path`` (a file) belongs in a snapshot."""
        if self.include_spec is not None and not self.include_spec.match_file(path):
            return False
        return not self.ignores_file(path)

    def for_directory(self, rel_dir: str, abs_dir: Path) -> "PathFilter":
        """This filter extended with the ignore files found in ``abs_dir``."""
        if rel_dir in self.loaded_dirs:
            return self
        gitignore_path = abs_dir / GITIGNORE_FILENAME
        ctxsyncignore_path = abs_dir / CTXSYNCIGNORE_FILENAME
        gitignore = IgnoreLayer.from_lines(
            read_ignore_file(gitignore_path), rel_dir, source=str(gitignore_path)
        )
        ctxsyncignore = IgnoreLayer.from_lines(
            read_ignore_file(ctxsyncignore_path), rel_dir, source=str(ctxsyncignore_path)
        )
        return replace(
            self,
            gitignore_layers=self.gitignore_layers + ((gitignore,) if gitignore else ()),
            ctxsyncignore_layers=self.ctxsyncignore_layers
            + ((ctxsyncignore,) if ctxsyncignore else ()),
            loaded_dirs=self.loaded_dirs | {rel_dir},
        )


def read_ignore_file(path: Path) -> list[str]:
    try:
        text = path.read_text(encoding="utf-8", errors="ignore")
    except FileNotFoundError:
        return []
    except OSError as exc:
        logger.warning("Cannot read ignore file %s: %s", path, exc)
        return []
    return text.splitlines()


def build_path_filter(
    include_patterns: list[str] | tuple[str, ...] | None = None,
    exclude_patterns: list[str] | tuple[str, ...] | None = None,
    *,
    root: Path | None = None,
    use_defaults: bool = True,
) -> PathFilter:
    """Build the filter from defaults, root ignore files, then user patterns.

    Ignore files in subdirectories are added by the scanner as it walks
    (see ``PathFilter.for_directory``).
    """
    include = _valid_patterns(include_patterns or [], "include_patterns")
    defaults = IgnoreLayer.from_lines(DEFAULT_IGNORE_PATTERNS) if use_defaults else None
    user = IgnoreLayer.from_lines(exclude_patterns or [], source="ignore_patterns")
    path_filter = PathFilter(
        include_spec=pathspec.GitIgnoreSpec.from_lines(include) if include else None,
        default_layers=(defaults,) if defaults else (),
        user_layers=(user,) if user else (),
    )
    if root is not None:
        path_filter = path_filter.for_directory("", Path(root))
    return path_filter
