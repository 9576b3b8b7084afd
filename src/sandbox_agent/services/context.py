from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from sandbox_agent.domain.memory import ActionLogEntry, ConversationEntry
from sandbox_agent.persistence.memory_store import SqliteMemoryStore
from sandbox_agent.presentation.toon import to_toon

logger = logging.getLogger(__name__)

CONTEXT_FORMAT_JSON = "json"
CONTEXT_FORMAT_TOON = "toon"

LIST_SUMMARY_MAX_NAMES = 20
CONVERSATION_BUDGET_CHARS = 12_000
FACTS_BUDGET_CHARS = 8_000
ACTIONS_BUDGET_CHARS = 12_000

SYSTEM_PROMPT = """
You are a file system agent. Fulfil the user's request by performing file system operations.
You operate inside a sandboxed directory and cannot access anything outside it.

Reply with exactly one valid JSON object of this shape:
{
  "thought": "Your reasoning. Analyse the request and plan the steps.",
  "message": "Optional short note addressed to the user.",
  "operations": [
    { "op": "write", "path": "path/to/file", "content": "file content" },
    { "op": "read", "path": "path/to/file" },
    { "op": "mkdir", "path": "path/to/dir" },
    { "op": "delete", "path": "path/to/file_or_dir" },
    { "op": "list", "path": "path/to/dir", "pattern": "optional_search_term" },
    { "op": "move", "from": "source", "to": "dest" },
    { "op": "copy", "from": "source", "to": "dest" },
    { "op": "move_all", "path": ".", "destination": "target_folder", "extensions": [".pdf", ".docx"] },
    { "op": "remember", "key": "topic", "value": "fact" },
    { "op": "recall", "key": "topic" },
    { "op": "web_search", "query": "search query" },
    { "op": "semantic_search", "query": "what the file is about" },
    { "op": "index_files" },
    { "op": "generate_template", "templateName": "python-package", "targetDir": "my_project", "variables": { "project_name": "my_project" } },
    { "op": "plan_proposal", "planName": "name", "steps": ["step 1", "step 2"], "complexity": "low" }
  ]
}

- "thought": explain WHY you are doing these operations.
- "operations": the operations to perform this turn. They run concurrently, so never
  put two operations that depend on each other in the same turn.
- Return an empty "operations" array when the task is complete.
- Available templates: python-package, express-api, react-component, static-site.

=== PROJECT PLANNING PROTOCOL ===
If the user asks for a "project structure", "plan" or "blueprint", immediately write a
Markdown file named "[Project Name] Plan.md" with exactly these sections:

# [Project Name] Plan

## 1. Description
[Detailed description of what is being built]

## 2. Tools & Stack
- [Tool 1]
- [Tool 2]

## 3. Execution Plan
[High-level strategy]

## 4. Steps
1. [Step 1]
2. [Step 2]

## 5. Cost Analysis
[Estimated resources or API costs if applicable]

## 6. Workflow Context
**Previous Step:** [What was done before this plan?]
**Next Step:** [What is the immediate action after this plan?]

## 7. Data/Resources
[Tables or strict data structures if needed]
---

=== BULK OPERATIONS PROTOCOL ===
If the user asks to move all files of a certain type (e.g. "move all pdfs"):
  1. Do NOT list the files first.
  2. Do NOT move files one by one.
  3. Use `move_all` immediately.

Example:
User: "Move all pdfs to PDFS folder"
Response: { "thought": "Moving all pdfs using move_all", "operations": [{ "op": "move_all", "path": ".", "destination": "PDFS", "extensions": [".pdf"] }] }

Constraints:
- Use only the operations listed above.
- All paths are relative to the sandbox root.
- Do not make assumptions about file content unless you read it or created it.
- Scaffold projects step by step.
- Only return JSON. Do not wrap it in markdown fences.
""".strip()


def summarize_action(entry: ActionLogEntry) -> Dict[str, Any]:
    operation = entry.operation or {}
    result = entry.result or {}
    summary: Dict[str, Any] = {
        "op": operation.get("op", ""),
        "path": _action_target(operation),
        "status": result.get("status", "success"),
    }
    files = result.get("files")
    if operation.get("op") == "list" and isinstance(files, list):
        if len(files) > LIST_SUMMARY_MAX_NAMES:
            extra = len(files) - LIST_SUMMARY_MAX_NAMES
            summary["files"] = list(files[:LIST_SUMMARY_MAX_NAMES]) + [f"...and {extra} more"]
        else:
            summary["files"] = list(files)
    if isinstance(result.get("moved"), list):
        summary["moved_count"] = len(result["moved"])
    if result.get("error"):
        summary["error"] = result["error"]
    return summary


def _action_target(operation: Dict[str, Any]) -> str:
    for key in ("path", "from", "key", "query", "targetDir", "planName"):
        value = operation.get(key)
        if value:
            return str(value)
    return ""


def _trim_lines_from_end(lines: List[str], budget_chars: int) -> List[str]:
    out: List[str] = []
    used = 0
    for line in reversed(lines):
        n = len(line)
        if used + n > budget_chars:
            break
        out.append(line)
        used += n
    return list(reversed(out))


class ContextAssembler:
    """Builds the message list for one model call.

    The system message carries the operation protocol, the sandbox root and a
    memory section (facts, recent conversation, recent action summaries),
    each section capped so the prompt stays bounded regardless of store size.
    """

    def __init__(
        self,
        memory: SqliteMemoryStore,
        recent_actions: int = 10,
        recent_messages: int = 10,
        context_format: str = CONTEXT_FORMAT_JSON,
    ) -> None:
        self._memory = memory
        self._recent_actions = max(1, int(recent_actions))
        self._recent_messages = max(1, int(recent_messages))
        fmt = (context_format or CONTEXT_FORMAT_JSON).strip().lower()
        self._format = fmt if fmt in {CONTEXT_FORMAT_JSON, CONTEXT_FORMAT_TOON} else CONTEXT_FORMAT_JSON

    def assemble(
        self,
        task: str,
        root: str,
        history: Optional[Sequence[Dict[str, str]]] = None,
        session_id: Optional[str] = None,
    ) -> List[Dict[str, str]]:
        facts = self._memory.get_all_facts()
        actions = self._memory.get_recent_actions(self._recent_actions, session_id=session_id)
        conversation = self._memory.get_recent_conversation(self._recent_messages, session_id=session_id)
        system = self.build_system_prompt(root, facts, actions, conversation)
        messages: List[Dict[str, str]] = [{"role": "system", "content": system}]
        for item in history or []:
            role = str(item.get("role") or "user")
            content = str(item.get("content") or "")
            if role not in {"user", "assistant", "system"} or not content:
                continue
            messages.append({"role": role, "content": content})
        messages.append({"role": "user", "content": task})
        return messages

    def build_system_prompt(
        self,
        root: str,
        facts: Dict[str, str],
        actions: Sequence[ActionLogEntry],
        conversation: Sequence[ConversationEntry],
    ) -> str:
        facts_text = self._render(facts)
        if len(facts_text) > FACTS_BUDGET_CHARS:
            facts_text = facts_text[:FACTS_BUDGET_CHARS] + "\n..."
        action_lines = self._render([summarize_action(a) for a in actions]).splitlines()
        actions_text = "\n".join(_trim_lines_from_end(action_lines, ACTIONS_BUDGET_CHARS))
        chat_lines = [f"{c.role.upper()}: {c.content}" for c in conversation]
        chat_text = "\n".join(_trim_lines_from_end(chat_lines, CONVERSATION_BUDGET_CHARS))
        return "\n".join(
            [
                SYSTEM_PROMPT,
                "",
                "=== OPERATIONAL CONTEXT ===",
                f"**Current Sandbox Root**: `{root}`",
                "(You live here. If this is a restricted folder you cannot leave it. "
                "If it is the system root you have full access.)",
                "",
                "=== MEMORY CONTEXT ===",
                "[Long-Term Knowledge]",
                facts_text,
                "",
                "[Recent Conversation History]",
                chat_text,
                "",
                "[Recent Actions Performed]",
                actions_text,
                "",
                'If the user says "forget X" or "focus on Y", ignore conflicting information about X '
                "from the recent conversation history.",
                "",
                "Use this history to:",
                "1. Undo previous actions if requested, by performing the inverse operation.",
                "2. Answer questions about what you did previously.",
                "3. Avoid repeating successful actions unnecessarily.",
            ]
        )

    def _render(self, data: Any) -> str:
        if self._format == CONTEXT_FORMAT_TOON:
            return to_toon(data) if data else ("{}" if isinstance(data, dict) else "[]")
        return json.dumps(data, indent=2, ensure_ascii=False, default=str)
