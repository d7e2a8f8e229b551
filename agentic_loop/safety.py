"""Safety pipeline applied around tool execution."""

import re
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from agentic_loop.config import SafetyConfig
from agentic_loop.exceptions import OutputRejected
from agentic_loop.logging import get_logger

log = get_logger(__name__)

_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=.*$")
_SHELL_SEPARATOR_TOKENS = {";", "&&", "||", "|", "&"}
_SHELL_WRAPPER_TOKENS = {"sudo", "command", "builtin", "nohup", "time", "env"}
_TRAVERSAL_RE = re.compile(r"(^|[\\/])\.\.([\\/]|$)")
_INJECTION_RE = re.compile(
    r"ignore (all )?(previous|prior|above) instructions"
    r"|disregard (your|all|the) (instructions|rules)"
    r"|reveal (your|the) system prompt",
    re.IGNORECASE,
)
_PRIVATE_KEY_RE = re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----")
_SECRET_PATTERNS = [
    re.compile(r"\bsk-[A-Za-z0-9_-]{20,}"),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{30,}"),
    re.compile(r"\bxox[abprs]-[A-Za-z0-9-]{10,}"),
]
_BEARER_RE = re.compile(r"(?i)\b(bearer\s+)[A-Za-z0-9._~+/-]{16,}=*")
REDACTED = "[REDACTED]"


@dataclass(frozen=True)
class SafetyVerdict:
    """Decision on a tool call's arguments: Allow, Warn or Block."""

    reason: str = ""


@dataclass(frozen=True)
class Allow(SafetyVerdict):
    pass


@dataclass(frozen=True)
class Warn(SafetyVerdict):
    pass


@dataclass(frozen=True)
class Block(SafetyVerdict):
    pass


class SafetyPipeline(ABC):
    """Input/output checks consulted by the loop around every tool call."""

    @abstractmethod
    def validate_input(self, arguments: dict[str, Any]) -> SafetyVerdict:
        pass

    @abstractmethod
    def check_output(self, tool_name: str, text: str) -> str:
        """Return the text to show the model.

        Raises:
            OutputRejected if the output must not reach the model at all
        """
        pass


def _tokenize_shell_command(command: str) -> list[str]:
    """Tokenize shell command while preserving control operators."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    return list(lexer)


def _split_shell_segments(command: str) -> list[list[str]]:
    """Split shell command into tokenized segments separated by control operators."""
    segments: list[list[str]] = []
    current: list[str] = []
    for token in _tokenize_shell_command(command):
        if token in _SHELL_SEPARATOR_TOKENS:
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def _extract_segment_base_command(tokens: list[str]) -> str:
    """Extract executable command token from a tokenized shell segment."""
    for token in tokens:
        token = str(token).strip()
        if not token or token in _SHELL_WRAPPER_TOKENS:
            continue
        if _ASSIGNMENT_RE.match(token) and "/" not in token:
            continue
        return token
    return ""


def _compile_shell_pattern(pattern: str) -> re.Pattern[str]:
    """Compile a blocked-command pattern, treating invalid regex as a literal."""
    try:
        return re.compile(pattern)
    except re.error:
        return re.compile(re.escape(pattern))


def match_blocked_command(command: str, blocked_patterns: list[str]) -> str | None:
    """Return the blocked pattern a shell command matches, if any.

    Patterns containing whitespace are searched for in each segment; single
    words must match the start of a segment's base command (with or without
    its directory), so ``mkfs`` also catches ``/sbin/mkfs.ext4``.

    Raises:
        ValueError if the command cannot be tokenized
    """
    segments = _split_shell_segments(command)
    segment_texts = [" ".join(tokens) for tokens in segments]
    base_commands: list[str] = []
    for segment in segments:
        base = _extract_segment_base_command(segment)
        if base:
            base_commands.append(base)
            base_commands.append(Path(base).name)

    for raw_pattern in blocked_patterns or []:
        pattern = str(raw_pattern or "").strip()
        if not pattern:
            continue
        compiled = _compile_shell_pattern(pattern)
        if re.search(r"\s", pattern):
            if any(compiled.search(text) for text in segment_texts):
                return pattern
        elif any(compiled.match(base) for base in base_commands):
            return pattern
        elif not re.search(r"\w", pattern) and pattern in command:
            return pattern
    return None


def _iter_strings(value: Any, path: str = "") -> Iterator[tuple[str, str]]:
    """Yield (dotted key path, string) for every string nested in value."""
    if isinstance(value, str):
        yield path, value
    elif isinstance(value, dict):
        for key, item in value.items():
            yield from _iter_strings(item, f"{path}.{key}" if path else str(key))
    elif isinstance(value, (list, tuple)):
        for idx, item in enumerate(value):
            yield from _iter_strings(item, f"{path}[{idx}]")


def _iter_argv(value: Any, path: str = "") -> Iterator[tuple[str, list[str]]]:
    """Yield (key path, list) for every non-empty list made only of strings."""
    if isinstance(value, dict):
        for key, item in value.items():
            yield from _iter_argv(item, f"{path}.{key}" if path else str(key))
    elif isinstance(value, (list, tuple)):
        if path and value and all(isinstance(item, str) for item in value):
            yield path, list(value)
        for idx, item in enumerate(value):
            yield from _iter_argv(item, f"{path}[{idx}]")


def _leaf_key(key_path: str) -> str:
    """Name of the innermost key in a path like ``a.cmd[0]`` (here ``cmd``)."""
    trimmed = re.sub(r"(\[\d+\])+$", "", key_path)
    return trimmed.rsplit(".", 1)[-1].split("[", 1)[0].lower()


class DefaultSafetyPipeline(SafetyPipeline):
    """Rule-based checks driven by SafetyConfig."""

    def __init__(self, config: SafetyConfig | None = None):
        self.config = config or SafetyConfig()
        self._sensitive = [
            str(Path(item).expanduser()) for item in self.config.sensitive_paths if item
        ]
        self._command_keys = {key.lower() for key in self.config.command_keys}

    def _check_command(self, key_path: str, command: str) -> SafetyVerdict | None:
        try:
            matched = match_blocked_command(command, self.config.blocked_commands)
        except ValueError:
            return Warn(f"Command in '{key_path}' could not be parsed")
        if matched:
            return Block(f"Command matches blocked pattern: {matched}")
        return None

    def _check_value(self, key_path: str, value: str) -> SafetyVerdict:
        if _leaf_key(key_path) in self._command_keys:
            verdict = self._check_command(key_path, value)
            if verdict is not None:
                return verdict

        if self.config.block_path_traversal and _TRAVERSAL_RE.search(value):
            return Block(f"Path traversal in argument '{key_path}'")

        expanded = str(Path(value).expanduser()) if value.startswith("~") else value
        for sensitive in self._sensitive:
            if expanded == sensitive or expanded.startswith(sensitive.rstrip("/") + "/"):
                return Block(f"Access to sensitive path: {sensitive}")

        if len(value) > self.config.max_argument_chars:
            return Warn(
                f"Argument '{key_path}' is {len(value)} chars "
                f"(limit {self.config.max_argument_chars})"
            )
        if _INJECTION_RE.search(value):
            return Warn(f"Possible prompt injection in argument '{key_path}'")
        return Allow()

    def _verdicts(self, arguments: dict[str, Any]) -> Iterator[SafetyVerdict]:
        for key_path, value in _iter_strings(arguments):
            yield self._check_value(key_path, value)
        # argv-style commands are also checked as one joined line
        for key_path, argv in _iter_argv(arguments):
            if _leaf_key(key_path) in self._command_keys:
                verdict = self._check_command(key_path, shlex.join(argv))
                if verdict is not None:
                    yield verdict

    def validate_input(self, arguments: dict[str, Any]) -> SafetyVerdict:
        warning: SafetyVerdict | None = None
        for verdict in self._verdicts(arguments):
            if isinstance(verdict, Block):
                return verdict
            if isinstance(verdict, Warn) and warning is None:
                warning = verdict
        return warning or Allow()

    def check_output(self, tool_name: str, text: str) -> str:
        if self.config.reject_private_keys and _PRIVATE_KEY_RE.search(text):
            raise OutputRejected(f"Output of '{tool_name}' contains private key material")

        sanitized = text
        if self.config.redact_secrets:
            for pattern in _SECRET_PATTERNS:
                sanitized = pattern.sub(REDACTED, sanitized)
            sanitized = _BEARER_RE.sub(lambda m: m.group(1) + REDACTED, sanitized)
            if sanitized != text:
                log.info("Redacted secrets from tool output", tool=tool_name)

        limit = self.config.max_output_chars
        if len(sanitized) > limit:
            dropped = len(sanitized) - limit
            sanitized = sanitized[:limit].rstrip() + f"\n...[truncated {dropped} chars]"
        return sanitized
