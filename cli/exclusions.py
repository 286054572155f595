"""Path exclusion patterns for the backup scanner.

Patterns are matched against forward-slash paths relative to the backup root,
one path segment at a time:

- ``**`` matches any number of whole segments, including none;
- ``*`` matches any run of characters inside one segment;
- ``?`` matches exactly one character inside one segment.
"""

from __future__ import annotations

import re
from functools import lru_cache

DEFAULT_EXCLUSIONS: tuple[str, ...] = (
    "**/node_modules/**",
    "**/.git/**",
    "**/temp/**",
    "**/tmp/**",
    "**/*.tmp",
    "**/.DS_Store",
    "**/Thumbs.db",
)

_GLOBSTAR = "**"


def _segment_regex(segment: str) -> re.Pattern[str]:
    parts: list[str] = []
    for char in segment:
        if char == "*":
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts))


@lru_cache(maxsize=256)
def compile_pattern(pattern: str) -> tuple[re.Pattern[str] | str, ...]:
    """Split a pattern into per-segment matchers; ``**`` stays a marker string."""
    tokens: list[re.Pattern[str] | str] = []
    for segment in pattern.strip().strip("/").split("/"):
        if segment == _GLOBSTAR:
            # Consecutive globstars are equivalent to one
            if tokens and tokens[-1] == _GLOBSTAR:
                continue
            tokens.append(_GLOBSTAR)
        elif segment:
            tokens.append(_segment_regex(segment))
    return tuple(tokens)


def _match_tokens(tokens: tuple[re.Pattern[str] | str, ...], segments: list[str]) -> bool:
    # reachable[j]: the tokens consumed so far can match segments[:j]
    reachable = [True] + [False] * len(segments)
    for token in tokens:
        following = [False] * (len(segments) + 1)
        if token == _GLOBSTAR:
            seen = False
            for j, ok in enumerate(reachable):
                seen = seen or ok
                following[j] = seen
        else:
            assert isinstance(token, re.Pattern)
            for j, segment in enumerate(segments):
                if reachable[j] and token.fullmatch(segment):
                    following[j + 1] = True
        reachable = following
    return reachable[-1]


def _segments(relpath: str) -> list[str]:
    return [s for s in relpath.replace("\\", "/").split("/") if s and s != "."]


def matches(pattern: str, relpath: str) -> bool:
    """True if ``relpath`` matches the exclusion ``pattern``."""
    return _match_tokens(compile_pattern(pattern), _segments(relpath))


class ExclusionMatcher:
    """A fixed set of exclusion patterns."""

    def __init__(self, patterns: list[str] | tuple[str, ...] = DEFAULT_EXCLUSIONS) -> None:
        self.patterns = [p for p in patterns if p.strip()]

    def excludes(self, relpath: str) -> bool:
        """True if a file at ``relpath`` must be skipped."""
        segments = _segments(relpath)
        return any(_match_tokens(compile_pattern(p), segments) for p in self.patterns)

    def excludes_dir(self, relpath: str) -> bool:
        """True if everything below the directory ``relpath`` is excluded.

        Only patterns ending in ``**`` can prune a whole directory.
        """
        segments = _segments(relpath)
        for pattern in self.patterns:
            tokens = compile_pattern(pattern)
            if tokens and tokens[-1] == _GLOBSTAR and _match_tokens(tokens, segments):
                return True
        return False
