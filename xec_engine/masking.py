"""
Sensitive Data Masking
======================

Scrubs secrets out of command lines and command output before results
leave an adapter. Keys and prefixes are kept; only the secret value is
replaced.
"""

import re
from typing import Iterable, List, Optional, Pattern

REPLACEMENT = "[REDACTED]"

_VALUE = r"""("[^"]+"|'[^']+'|[^"'\s]+)"""

# Each pattern keeps group 1 (and 2 where present) and masks the last group
DEFAULT_PATTERNS: List[Pattern] = [
    # "password": "value" inside JSON
    re.compile(r'("(?:api[_-]?key|apikey|password|token|secret|client[_-]?secret)"\s*:\s*)("[^"]+")', re.I),
    # Authorization: Bearer xyz
    re.compile(r"(Authorization:\s*(?:Bearer|Basic)\s+)([A-Za-z0-9_\-/.+=]+)", re.I),
    # Named credentials
    re.compile(
        r"\b((?:api[_-]?key|apikey|access[_-]?token|auth[_-]?token|authentication[_-]?token|"
        r"private[_-]?key|secret[_-]?key|aws[_-]?access[_-]?key[_-]?id|aws[_-]?secret[_-]?access[_-]?key|"
        r"github[_-]?token|client[_-]?secret|secret|token)\s*[:=]\s*)" + _VALUE,
        re.I,
    ),
    re.compile(r"\b((?:password|passwd|pwd)\s*[:=]\s*)(\"[^\"]+\"|'[^']+'|\S+)", re.I),
    # --password value / --secret value
    re.compile(r"(--(?:password|client[_-]?secret|secret)\s+)" + _VALUE, re.I),
    # SECRET_ish environment assignments
    re.compile(
        r"\b([A-Z][A-Z0-9_]*(?:SECRET|TOKEN|KEY|PASSWORD|PASSWD|PWD|APIKEY|API_KEY)[A-Z0-9_]*\s*[:=]\s*)"
        r"(\"[^\"]+\"|'[^']+'|\S+)"
    ),
    # Bare GitHub tokens
    re.compile(r"()\b(gh[ps]_[A-Za-z0-9]{16,})"),
    # Bare bearer tokens
    re.compile(r"\b(Bearer\s+)([A-Za-z0-9_\-/.]+)"),
]

_PRIVATE_KEY = re.compile(
    r"-----BEGIN\s+(?:RSA|DSA|EC|OPENSSH)\s+PRIVATE\s+KEY-----[\s\S]+?"
    r"-----END\s+(?:RSA|DSA|EC|OPENSSH)\s+PRIVATE\s+KEY-----",
    re.I,
)


class SensitiveDataMasker:
    """Applies a list of secret patterns to text"""

    def __init__(self, patterns: Optional[Iterable[Pattern]] = None, replacement: str = REPLACEMENT):
        self.patterns = list(patterns) if patterns is not None else list(DEFAULT_PATTERNS)
        self.replacement = replacement

    def mask(self, text: str) -> str:
        if not text:
            return text

        text = _PRIVATE_KEY.sub(self.replacement, text)
        for pattern in self.patterns:
            text = pattern.sub(self._replace, text)
        return text

    def _replace(self, match: "re.Match") -> str:
        if match.group(match.lastindex) == self.replacement:
            return match.group(0)
        return match.group(1) + self.replacement
