"""Page function source screening.

Rejects page function sources that contain known-dangerous JavaScript
constructs before they are embedded into the sandbox wrapper. This is a
first line of defense only: the isolation boundary is the per-page browser
context, cut off from the network before the function runs, with an
allow-listed context object and a host-enforced timeout
(see ``pagecrawl.services.sandbox``).
"""

import re
from typing import NamedTuple

import logfire

from pagecrawl.constants import MAX_PAGE_FUNCTION_CHARS


class GuardResult(NamedTuple):
    """Result of screening a page function source.

    Attributes:
        is_allowed: Whether the source may be executed.
        matched_pattern: Name of the rule that rejected it, if any.
        detail: Human-readable reason when rejected.
    """

    is_allowed: bool
    matched_pattern: str | None
    detail: str | None


class ScriptGuard:
    """Screen operator-supplied page functions for dangerous constructs.

    Two checks run in order:
    - Pattern rules: eval-like code generation, prototype tampering,
      module loading, host-process access, network and storage APIs
    - Structure: the source must not close more brackets than it opens,
      which would let it escape the wrapper function it is embedded in
    """

    BLOCKED_PATTERNS: list[tuple[str, str]] = [
        (r"\beval\s*\(", "eval"),
        (r"\bnew\s+Function\b|\bFunction\s*\(", "function_constructor"),
        (r"\.\s*constructor\b|\[\s*['\"`]constructor['\"`]\s*\]", "constructor_access"),
        (r"__proto__|\b(?:set|get)PrototypeOf\b", "prototype_access"),
        (r"\bimport\s*\(|^\s*import\s", "module_import"),
        (r"\brequire\s*\(", "require"),
        (r"\bprocess\s*\.", "process_access"),
        (
            r"\bfetch\s*\(|\bXMLHttpRequest\b|\bWebSocket\b|\bEventSource\b"
            r"|\bsendBeacon\b|\bimportScripts\b",
            "network_access",
        ),
        (r"\b(?:defaultView|ownerDocument|contentWindow|contentDocument)\b", "window_escape"),
        (r"\.\s*(?:ajax|getJSON|getScript|post)\s*\(", "jquery_network"),
        (r"\b(?:localStorage|sessionStorage|indexedDB)\b|\bdocument\s*\.\s*cookie\b", "storage_access"),
        (r"\bset(?:Timeout|Interval)\s*\(\s*['\"`]", "string_timer"),
        (r"\bpostMessage\s*\(", "post_message"),
        (r"\bdebugger\b", "debugger"),
        (r"<\s*/?\s*script\b", "script_tag"),
    ]

    _OPENERS = {"(": ")", "[": "]", "{": "}"}
    _CLOSERS = {")", "]", "}"}
    # Characters after which a "/" starts a regex literal rather than a division.
    _REGEX_PRECEDERS = set("(,=:[!&|?{};+-*%<>~^")
    _REGEX_KEYWORDS = frozenset(("return", "typeof", "case", "in", "of", "void", "yield", "await"))

    def __init__(self, max_chars: int = MAX_PAGE_FUNCTION_CHARS) -> None:
        """Initialize the guard with compiled patterns.

        Args:
            max_chars: Maximum accepted source length.
        """
        self._max_chars = max_chars
        self._patterns = [
            (re.compile(pattern, re.MULTILINE), name)
            for pattern, name in self.BLOCKED_PATTERNS
        ]

    def check(self, source: str) -> GuardResult:
        """Check a page function source.

        Args:
            source: The operator-supplied JavaScript function body.

        Returns:
            GuardResult with the verdict and the rule that fired, if any.
        """
        if not source or not source.strip():
            return GuardResult(False, "empty_source", "Page function is empty")

        if len(source) > self._max_chars:
            return GuardResult(
                False,
                "source_too_long",
                f"Page function exceeds {self._max_chars} characters",
            )

        if "\x00" in source:
            return GuardResult(False, "null_byte", "Page function contains a null byte")

        for pattern, name in self._patterns:
            match = pattern.search(source)
            if match:
                logfire.warning(
                    "Page function rejected",
                    pattern=name,
                    snippet=match.group(0)[:40],
                    source_length=len(source),
                )
                return GuardResult(
                    False, name, f"Disallowed construct: {match.group(0).strip()}"
                )

        structure_problem = self._check_structure(source)
        if structure_problem:
            logfire.warning(
                "Page function rejected",
                pattern="unbalanced_brackets",
                source_length=len(source),
            )
            return GuardResult(False, "unbalanced_brackets", structure_problem)

        return GuardResult(True, None, None)

    def _check_structure(self, source: str) -> str | None:
        """Scan brackets outside strings, comments and regex literals.

        Returns:
            Description of the problem, or None when the source is balanced.
        """
        # Stack entries are expected closers, or "`" for an open template literal
        # whose ${...} substitution we are currently inside.
        stack: list[str] = []
        i = 0
        n = len(source)
        last_significant = ""

        while i < n:
            ch = source[i]
            nxt = source[i + 1] if i + 1 < n else ""

            if ch in " \t\r\n":
                i += 1
                continue

            if ch == "/" and nxt == "/":
                end = source.find("\n", i)
                i = n if end == -1 else end
                continue

            if ch == "/" and nxt == "*":
                end = source.find("*/", i + 2)
                if end == -1:
                    return "Unterminated block comment"
                i = end + 2
                continue

            if ch in "'\"":
                end = self._skip_quoted(source, i, ch)
                if end is None:
                    return "Unterminated string literal"
                i = end
                last_significant = ch
                continue

            if ch == "`":
                i, entered = self._skip_template(source, i + 1)
                if i is None:
                    return "Unterminated template literal"
                if entered:
                    stack.append("`")
                last_significant = "`"
                continue

            if ch.isalnum() or ch in "_$":
                start = i
                while i < n and (source[i].isalnum() or source[i] in "_$"):
                    i += 1
                last_significant = source[start:i]
                continue

            if ch == "/" and (
                not last_significant
                or last_significant in self._REGEX_PRECEDERS
                or last_significant in self._REGEX_KEYWORDS
            ):
                end = self._skip_regex(source, i)
                if end is None:
                    return "Unterminated regular expression"
                i = end
                last_significant = "/"
                continue

            if ch in self._OPENERS:
                stack.append(self._OPENERS[ch])
            elif ch in self._CLOSERS:
                if not stack:
                    return f"Unexpected '{ch}' closes the enclosing function"
                expected = stack.pop()
                if expected == "`" and ch == "}":
                    # End of a ${...} substitution: resume the template literal.
                    i, entered = self._skip_template(source, i + 1)
                    if i is None:
                        return "Unterminated template literal"
                    if entered:
                        stack.append("`")
                    last_significant = "`"
                    continue
                if expected != ch:
                    return f"Mismatched '{ch}'"

            last_significant = ch
            i += 1

        if stack:
            return "Unclosed bracket"
        return None

    @staticmethod
    def _skip_quoted(source: str, start: int, quote: str) -> int | None:
        i = start + 1
        while i < len(source):
            ch = source[i]
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                return i + 1
            if ch == "\n":
                return None
            i += 1
        return None

    @staticmethod
    def _skip_template(source: str, i: int) -> tuple[int | None, bool]:
        """Advance through template text.

        Returns:
            (index after the stop point, True if a ${ substitution was entered).
        """
        while i < len(source):
            ch = source[i]
            if ch == "\\":
                i += 2
                continue
            if ch == "`":
                return i + 1, False
            if ch == "$" and source[i + 1 : i + 2] == "{":
                return i + 2, True
            i += 1
        return None, False

    @staticmethod
    def _skip_regex(source: str, start: int) -> int | None:
        i = start + 1
        in_class = False
        while i < len(source):
            ch = source[i]
            if ch == "\\":
                i += 2
                continue
            if ch == "\n":
                return None
            if ch == "[":
                in_class = True
            elif ch == "]":
                in_class = False
            elif ch == "/" and not in_class:
                i += 1
                while i < len(source) and source[i].isalpha():
                    i += 1
                return i
            i += 1
        return None


# Global instance
_guard: ScriptGuard | None = None


def get_script_guard() -> ScriptGuard:
    """Get the global script guard instance."""
    global _guard
    if _guard is None:
        _guard = ScriptGuard()
    return _guard


def reset_script_guard() -> None:
    """Reset the global script guard (primarily for testing)."""
    global _guard
    _guard = None
