# matching.py
# Canonical text forms used to hook function calls up to function declarations.
from __future__ import annotations

import re

# {{local var}} or {global var}
VAR_REGEX = re.compile(r"\{\{[^{}\\]+\}\}|\{[^{}\\]+\}")
# 'string' or "string", with backslash escapes inside
STRING_LITERAL_REGEX = re.compile(r"'(?:[^\\']|\\.)*'|\"(?:[^\\\"]|\\.)*\"")
# [element finder]
ELEMENT_FINDER_REGEX = re.compile(r"\[(?:[^\\\[\]]|\\.)*\]")

WHITESPACE_REGEX = re.compile(r"\s+")
QUOTED_REGEX = re.compile(r"^(['\"]).*\1$", re.DOTALL)

# Every argument slot collapses to this token so that declarations and calls
# compare on shape alone.
ARG_TOKEN = "{}"


def _normalize(text: str) -> str:
    text = WHITESPACE_REGEX.sub(" ", text.strip())
    return text.replace("\\\\", "\\").replace("\\'", "'").replace('\\"', '"')


def declaration_shape(text: str) -> str:
    """Declaration text with every {{variable}} placeholder replaced, case preserved."""
    return _normalize(VAR_REGEX.sub(ARG_TOKEN, text.strip()))


def call_shape(text: str) -> str:
    """Call text with string literals, [element finders] and {variables} replaced, case preserved."""
    text = text.strip()
    text = STRING_LITERAL_REGEX.sub(ARG_TOKEN, text)
    text = ELEMENT_FINDER_REGEX.sub(ARG_TOKEN, text)
    text = VAR_REGEX.sub(ARG_TOKEN, text)
    return _normalize(text)


def canonical_declaration_text(text: str) -> str:
    return declaration_shape(text).lower()


def extract_arguments(call_text: str) -> list[str]:
    """
    Raw argument tokens of a call, in order of appearance.

    'strings' and "strings" come back with their quotes, [finders] with their
    brackets, {vars} with their braces.
    """
    pattern = re.compile(
        "|".join(p.pattern for p in (STRING_LITERAL_REGEX, ELEMENT_FINDER_REGEX, VAR_REGEX))
    )
    return [m.group(0) for m in pattern.finditer(call_text)]


def declaration_parameters(declaration_text: str) -> list[str]:
    """Names of the {{variables}} in a declaration, in order."""
    return [m.group(0).strip("{}").strip() for m in VAR_REGEX.finditer(declaration_text)]


def has_quotes(text: str) -> bool:
    """True if text is wrapped in 'quotes' or "quotes"."""
    return QUOTED_REGEX.match(text.strip()) is not None


def strip_quotes(text: str) -> str:
    """text without surrounding whitespace and quotes; text unchanged if it has no quotes."""
    if has_quotes(text):
        return text.strip()[1:-1]
    return text
