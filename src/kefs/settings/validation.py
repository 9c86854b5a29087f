"""Validation rules for user-provided configuration values."""

from __future__ import annotations

import re
from enum import Enum
from typing import Optional, Sequence

KOTLIN_VERSION_MACRO = "<kotlin-version>"
LIB_VERSION_MACRO = "<lib-version>"
ARTIFACT_ID_MACRO = "<artifact-id>"

VERSION_MACROS = (KOTLIN_VERSION_MACRO, LIB_VERSION_MACRO)
JAR_MACROS = (ARTIFACT_ID_MACRO,)

MAVEN_REGEX = re.compile(r"([\w.]+):([\w\-]+)")
PLUGIN_NAME_REGEX = re.compile(r"[a-zA-Z0-9_-]+")

_JAR_FORBIDDEN = re.compile(r"[^\w-]")
_VERSION_FORBIDDEN = re.compile(r"[^\w.+-]")


class PatternKind(Enum):
    VERSION = "version"
    JAR = "jar"


def validate_maven_id(coordinates: str) -> Optional[str]:
    if MAVEN_REGEX.fullmatch(coordinates) is None:
        return "Coordinates must have the form groupId:artifactId"
    return None


def validate_plugin_name(name: str) -> Optional[str]:
    if PLUGIN_NAME_REGEX.fullmatch(name) is None:
        return "Name may only contain letters, digits, '_' and '-'"
    return None


def validate_repository_name(name: str) -> Optional[str]:
    if not name or not name.strip():
        return "Repository name must not be empty"
    if ";" in name:
        return "Repository name must not contain ';'"
    return None


def validate_version_pattern(pattern: str) -> Optional[str]:
    """Validate a replacement version pattern; None means valid."""
    return validate_pattern(pattern, PatternKind.VERSION)


def validate_jar_pattern(pattern: str) -> Optional[str]:
    """Validate a replacement detect/search pattern; None means valid."""
    return validate_pattern(pattern, PatternKind.JAR)


def validate_pattern(pattern: str, kind: PatternKind) -> Optional[str]:
    """Validate a macro pattern.

    Returns:
        None when valid, otherwise a human-readable reason.
    """
    is_version = kind is PatternKind.VERSION
    macros: Sequence[str] = VERSION_MACROS if is_version else JAR_MACROS

    if not pattern or not pattern.strip():
        return "Pattern must not be empty"

    if any(macro not in pattern for macro in macros):
        return f"Pattern must contain: {', '.join(macros)}"

    if not is_version and ".jar" in pattern:
        return "Pattern must not contain .jar extension"

    bracket_error = _scan_brackets(pattern, macros)
    if bracket_error is not None:
        return f"{bracket_error}. Only these macros are allowed: {', '.join(macros)}"

    literal = pattern
    for macro in macros:
        literal = literal.replace(macro, "")

    if is_version:
        if _VERSION_FORBIDDEN.search(literal):
            return (
                "Version pattern contains forbidden characters "
                "(only word characters, dots, plus, and hyphens allowed)"
            )
    elif _JAR_FORBIDDEN.search(literal):
        return "Pattern contains forbidden characters (only word characters and hyphens allowed)"

    return None


def _scan_brackets(pattern: str, allowed: Sequence[str]) -> Optional[str]:
    """Single pass over angle brackets; returns the first violation found."""
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == ">":
            return f"Invalid macro: unmatched '>' at position {i}"
        if ch != "<":
            i += 1
            continue
        end = pattern.find(">", i + 1)
        nested = pattern.find("<", i + 1)
        if end == -1 or (nested != -1 and nested < end):
            return f"Invalid macro: unmatched '<' at position {i}"
        macro = pattern[i:end + 1]
        if macro not in allowed:
            return f"Invalid macro: unknown macro '{macro}'"
        i = end + 1
    return None
