"""
Heuristic error summaries for build tool output.

The pattern table is data: callers may pass their own list to classify_log().
When nothing matches, the summary is the raw tail of the output.
"""
import re
from dataclasses import dataclass, field
from typing import Optional, Sequence

SCAN_LINES = 400
MAX_MATCHED_LINES = 60
MAX_SUMMARY_CHARS = 6000
MAX_TAIL_CHARS = 4000


@dataclass(frozen=True)
class LogPattern:
    """A regex that marks a line as interesting, with the failure category it signals."""
    category: str
    regex: re.Pattern


def _pattern(category: str, expression: str) -> LogPattern:
    return LogPattern(category=category, regex=re.compile(expression, re.IGNORECASE))


DEFAULT_PATTERNS: list[LogPattern] = [
    _pattern("compiler_error", r"\berror\s+CS\d{4,5}\b"),
    _pattern("compiler_error", r"scripts have compiler errors"),
    _pattern("compiler_error", r"compilation failed"),
    _pattern("exception", r"\bexception\b"),
    _pattern("debugger", r"debugger-agent:\s*unable to listen on"),
    _pattern("missing_sdk", r"android\s+sdk"),
    _pattern("missing_sdk", r"android\s+ndk"),
    _pattern("missing_sdk", r"java\s+home"),
    _pattern("missing_sdk", r"jre\s+not\s+found"),
    _pattern("missing_sdk", r"unable to find.*java"),
    _pattern("missing_sdk", r"sdk.*not.*found"),
    _pattern("missing_sdk", r"ndk.*not.*found"),
    _pattern("toolchain", r"gradle\b"),
    _pattern("toolchain", r"failed to run command.*gradle"),
    _pattern("toolchain", r"build tools.*not found"),
    _pattern("license", r"license.*not accepted"),
    _pattern("license", r"keystore"),
    _pattern("build_failed", r"aborting batchmode"),
    _pattern("build_failed", r"\bBuild failed\b"),
    _pattern("fatal", r"\bFatal\b"),
]


@dataclass
class LogSummary:
    """Bounded, user-facing digest of a failed invocation's output."""
    text: str
    matched: bool
    categories: list[str] = field(default_factory=list)


def tail_text(text: str, max_chars: int = MAX_TAIL_CHARS) -> str:
    """Last max_chars characters, stripped."""
    return text[-max_chars:].strip()


def classify_log(text: str, patterns: Optional[Sequence[LogPattern]] = None) -> LogSummary:
    """
    Extract the interesting lines from the end of a tool's output.

    Scans the last SCAN_LINES lines; keeps the last MAX_MATCHED_LINES matches,
    clipped to MAX_SUMMARY_CHARS. Falls back to the raw tail when nothing matches.
    """
    patterns = DEFAULT_PATTERNS if patterns is None else patterns
    lines = [line.rstrip() for line in text.splitlines()][-SCAN_LINES:]

    matched_lines: list[str] = []
    categories: list[str] = []
    for line in lines:
        if not line.strip():
            continue
        for pattern in patterns:
            if pattern.regex.search(line):
                matched_lines.append(line)
                if pattern.category not in categories:
                    categories.append(pattern.category)
                break

    if not matched_lines:
        return LogSummary(text=tail_text(text), matched=False)

    summary = "\n".join(matched_lines[-MAX_MATCHED_LINES:])
    return LogSummary(text=summary[-MAX_SUMMARY_CHARS:].strip(), matched=True, categories=categories)
