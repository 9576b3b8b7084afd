import re
from functools import lru_cache
from typing import List

_SECRET_PATTERNS = (
    (r"sk-or-v1-[A-Za-z0-9]{16,}", "sk-or-REDACTED"),
    (r"sk-[A-Za-z0-9_-]{10,}", "sk-REDACTED"),
    (r"hf_[A-Za-z0-9]{16,}", "hf_REDACTED"),
    (r"(?i)\bBearer\s+[A-Za-z0-9\-._~+/]+=*", "Bearer REDACTED"),
    (
        r"(?i)\b([A-Z0-9_]*(?:api[_-]?key|token|secret|password))\b\s*[:=]\s*([^\s,;]+)",
        r"\1=REDACTED",
    ),
)


def redact(text: str) -> str:
    value = text or ""
    for regex, replacement in _compiled_patterns():
        value = regex.sub(replacement, value)
    return value


def mask_secret(value: str) -> str:
    if not value:
        return ""
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}...{value[-4:]}"


@lru_cache(maxsize=1)
def _compiled_patterns() -> List[tuple[re.Pattern[str], str]]:
    return [(re.compile(pattern), replacement) for pattern, replacement in _SECRET_PATTERNS]
