from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

RUN_STATE_RUNNING = "running"
RUN_STATE_DONE = "done"
RUN_STATE_FAILED = "failed"
RUN_STATE_CANCELLED = "cancelled"

TURN_STATUS_SUCCESS = "success"
TURN_STATUS_ERROR = "error"

MIN_TURNS = 1
MAX_TURNS = 50

FINAL_MESSAGE_DONE = "Task completed successfully. I'm done!"
FINAL_MESSAGE_MAX_TURNS = "Max turns reached. Request more turns to continue."


@dataclass(frozen=True)
class TurnRecord:
    turn: int
    status: str
    thought: str = ""
    message: Optional[str] = None
    results: List[Dict[str, Any]] = field(default_factory=list)
    usage: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "turn": self.turn,
            "status": self.status,
            "thought": self.thought,
            "results": list(self.results),
        }
        if self.message is not None:
            data["message"] = self.message
        if self.usage:
            data["usage"] = dict(self.usage)
        if self.error is not None:
            data["error"] = self.error
            data["error_code"] = self.error_code
        return data


@dataclass(frozen=True)
class RunSummary:
    status: str
    turns_executed: int
    final_message: str
    max_turns_reached: bool
    history: List[TurnRecord]
    usage: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "status": self.status,
            "turns_executed": self.turns_executed,
            "final_message": self.final_message,
            "max_turns_reached": self.max_turns_reached,
            "history": [t.to_dict() for t in self.history],
            "usage": dict(self.usage),
        }
        if self.session_id:
            data["session_id"] = self.session_id
        return data
