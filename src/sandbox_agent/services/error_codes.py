from dataclasses import dataclass
from typing import List


@dataclass(frozen=True)
class ErrorCatalogEntry:
    code: str
    title: str
    user_message: str
    triggers: List[str]
    hint: str = ""


ERROR_CATALOG: List[ErrorCatalogEntry] = [
    ErrorCatalogEntry(
        code="sandbox_violation",
        title="Path outside sandbox",
        user_message="An operation tried to reach outside the sandbox root.",
        triggers=["Security Violation:", "sandbox root"],
        hint="Use paths relative to the sandbox root.",
    ),
    ErrorCatalogEntry(
        code="not_found",
        title="Target not found",
        user_message="The requested file or directory does not exist.",
        triggers=["not found", "Unknown template"],
        hint="List the parent directory to check the exact name.",
    ),
    ErrorCatalogEntry(
        code="resource_busy",
        title="Resource busy",
        user_message="The target stayed busy after the delete retries.",
        triggers=["Resource busy"],
        hint="Close programs holding the file and retry.",
    ),
    ErrorCatalogEntry(
        code="protocol_error",
        title="Invalid model response",
        user_message="The model did not return a valid decision after corrective retries.",
        triggers=["Invalid JSON", "Decision does not match schema", "LLM returned empty content"],
        hint="Retry the task or pick a model that supports JSON mode.",
    ),
    ErrorCatalogEntry(
        code="upstream_error",
        title="Upstream service failed",
        user_message="A remote service (model, embeddings or web) failed.",
        triggers=["API Error", "is not set in environment variables", "Failed to fetch weather", "Web search failed"],
        hint="Check API keys and network access.",
    ),
    ErrorCatalogEntry(
        code="io_error",
        title="Filesystem error",
        user_message="The filesystem rejected the operation.",
        triggers=["Permission denied", "Is a directory", "Not a directory", "File exists"],
    ),
    ErrorCatalogEntry(
        code="invalid_operation",
        title="Invalid operation",
        user_message="The operation is not available or its arguments are invalid.",
        triggers=["Unknown operation type", "is disabled", "not configured"],
    ),
    ErrorCatalogEntry(
        code="cancelled",
        title="Run cancelled",
        user_message="The run was cancelled before it finished.",
        triggers=["cancelled"],
    ),
    ErrorCatalogEntry(
        code="internal_error",
        title="Unknown execution error",
        user_message="An unexpected error occurred.",
        triggers=[],
    ),
]


def detect_error_code(text: str) -> str:
    value = text or ""
    for entry in ERROR_CATALOG:
        if any(trigger in value for trigger in entry.triggers):
            return entry.code
    return "internal_error"


def get_catalog_entry(code: str) -> ErrorCatalogEntry:
    for entry in ERROR_CATALOG:
        if entry.code == code:
            return entry
    return next(entry for entry in ERROR_CATALOG if entry.code == "internal_error")


def describe_failure(code: str, error: str) -> str:
    entry = get_catalog_entry(code or detect_error_code(error))
    text = f"{entry.title}: {error}" if error else entry.user_message
    return f"{text} {entry.hint}".strip() if entry.hint else text
