from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatchcase
from pathlib import PurePosixPath


GITIGNORE_PATH = ".gitignore"

# Applied when a snapshot carries no .gitignore of its own.
DEFAULT_IGNORE_PATTERNS = (
    "node_modules/",
    "dist/",
    "build/",
    ".DS_Store",
    "coverage/",
    ".env",
    ".env.local",
    ".env.*.local",
    "*.log",
    "npm-debug.log*",
    "yarn-debug.log*",
    "yarn-error.log*",
    ".idea/",
    ".vscode/",
    "*.suo",
    "*.ntvs*",
    "*.njsproj",
    "*.sln",
    "*.sw?",
    ".next/",
    "out/",
    ".nuxt/",
    ".cache/",
    ".temp/",
    "tmp/",
)


def _normalize_pattern(pattern: str) -> str:
    normalized = pattern.strip().replace("\\", "/")
    if normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def _parent_dirs(path: str) -> list[str]:
    parts = path.split("/")[:-1]
    return ["/".join(parts[: index + 1]) for index in range(len(parts))]


def _match_pattern(path: str, pattern: str) -> bool:
    path_obj = PurePosixPath(path)
    norm = _normalize_pattern(pattern)
    if not norm:
        return False

    if norm.startswith("/"):
        anchored = norm.strip("/")
        if norm.endswith("/"):
            return any(fnmatchcase(parent, anchored) for parent in _parent_dirs(path))
        return fnmatchcase(path, anchored) or any(
            fnmatchcase(parent, anchored) for parent in _parent_dirs(path)
        )

    if norm.endswith("/"):
        directory = norm.rstrip("/")
        return any(PurePosixPath(parent).match(directory) for parent in _parent_dirs(path))

    # Support both repo-root anchored and recursive matching styles.
    return (
        path_obj.match(norm)
        or path_obj.match(f"**/{norm}")
        or any(PurePosixPath(parent).match(norm) for parent in _parent_dirs(path))
    )


def parse_gitignore(text: str) -> tuple[str, ...]:
    patterns: list[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        patterns.append(stripped)
    return tuple(patterns)


@dataclass(slots=True)
class PathFilter:
    include_patterns: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = ()
    ignore_patterns: tuple[str, ...] = ()

    def matches(self, path: str) -> bool:
        if self.include_patterns and not any(
            _match_pattern(path, pattern) for pattern in self.include_patterns
        ):
            return False
        if any(_match_pattern(path, pattern) for pattern in self.exclude_patterns):
            return False
        return not self.is_ignored(path)

    def is_ignored(self, path: str) -> bool:
        # gitignore semantics: the last matching rule wins, `!` re-includes.
        ignored = False
        for pattern in self.ignore_patterns:
            negated = pattern.startswith("!")
            body = pattern[1:] if negated else pattern
            if _match_pattern(path, body):
                ignored = not negated
        return ignored

    def with_ignore_patterns(self, patterns: tuple[str, ...]) -> "PathFilter":
        return PathFilter(
            include_patterns=self.include_patterns,
            exclude_patterns=self.exclude_patterns,
            ignore_patterns=patterns,
        )


def build_path_filter(
    include_patterns: list[str] | tuple[str, ...] | None = None,
    exclude_patterns: list[str] | tuple[str, ...] | None = None,
) -> PathFilter:
    include = tuple(_normalize_pattern(pattern) for pattern in (include_patterns or []) if pattern)
    exclude = tuple(_normalize_pattern(pattern) for pattern in (exclude_patterns or []) if pattern)
    return PathFilter(include_patterns=include, exclude_patterns=exclude)
