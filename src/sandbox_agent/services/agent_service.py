from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence

from sandbox_agent.domain.contracts import CHUNK_CONTENT, CHUNK_DONE, CHUNK_REASONING, ModelGateway
from sandbox_agent.domain.errors import ProtocolError, SandboxAgentError
from sandbox_agent.domain.memory import ROLE_ASSISTANT, ROLE_USER
from sandbox_agent.domain.operations import AgentDecision, operation_summary
from sandbox_agent.domain.runs import (
    FINAL_MESSAGE_DONE,
    FINAL_MESSAGE_MAX_TURNS,
    MAX_TURNS,
    MIN_TURNS,
    RUN_STATE_CANCELLED,
    RUN_STATE_DONE,
    RUN_STATE_FAILED,
    RUN_STATE_RUNNING,
    TURN_STATUS_ERROR,
    TURN_STATUS_SUCCESS,
    RunSummary,
    TurnRecord,
)
from sandbox_agent.events.channel import (
    DEFAULT_CHANNEL_SIZE,
    EVENT_CHUNK,
    EVENT_DONE,
    EVENT_ERROR,
    EVENT_MESSAGE,
    EVENT_OPERATIONS_RESULTS,
    EVENT_OPERATIONS_START,
    EVENT_RUN_COMPLETE,
    EVENT_THINKING,
    EVENT_THOUGHT,
    EVENT_TURN_START,
    EVENT_USAGE,
    EventChannel,
    TurnEvent,
)
from sandbox_agent.execution import paths
from sandbox_agent.observability.structured_log import log_json
from sandbox_agent.persistence.memory_store import SqliteMemoryStore
from sandbox_agent.services.batch import BatchExecutor
from sandbox_agent.services.context import ContextAssembler
from sandbox_agent.services.error_codes import describe_failure, detect_error_code

logger = logging.getLogger(__name__)

CONTINUE_PROMPT = "Continue. Check the 'Operation Results' above and execute the next logical step."
RESULTS_PROMPT_SUFFIX = "\n\nProceed with the next step."

Emit = Callable[[TurnEvent], Awaitable[None]]


async def _discard(event: TurnEvent) -> None:
    return None


def fold_turn(decision: AgentDecision, results: Sequence[Dict[str, Any]]) -> List[Dict[str, str]]:
    """History entries that show the next turn what the last one did."""
    action = {
        "thought": decision.thought,
        "operations": [operation_summary(op) for op in decision.operations],
    }
    return [
        {"role": ROLE_ASSISTANT, "content": json.dumps(action, ensure_ascii=False)},
        {
            "role": ROLE_USER,
            "content": f"Operation Results: {json.dumps(list(results), ensure_ascii=False, default=str)}"
            + RESULTS_PROMPT_SUFFIX,
        },
    ]


def accumulate_usage(total: Dict[str, Any], usage: Optional[Dict[str, Any]]) -> None:
    for key, value in (usage or {}).items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        total[key] = total.get(key, 0) + value


class AgentService:
    def __init__(
        self,
        gateway: ModelGateway,
        batch: BatchExecutor,
        context: ContextAssembler,
        memory: SqliteMemoryStore,
        sandbox_root: str,
        event_channel_size: int = DEFAULT_CHANNEL_SIZE,
    ) -> None:
        self._gateway = gateway
        self._batch = batch
        self._context = context
        self._memory = memory
        self._sandbox_root = paths.normalize_root(sandbox_root)
        self._event_channel_size = event_channel_size

    @property
    def sandbox_root(self) -> str:
        return self._sandbox_root

    @property
    def batch(self) -> BatchExecutor:
        return self._batch

    async def health(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "model": await self._gateway.version(),
            "sandbox_root": self._sandbox_root,
            "vector_entries": await asyncio.to_thread(self._batch.vector_entries),
            "action_log_entries": await asyncio.to_thread(self._memory.count_actions),
        }

    async def aclose(self) -> None:
        await self._batch.aclose()
        close = getattr(self._gateway, "aclose", None)
        if close is not None:
            await close()

    def prepare(self, task: str, max_turns: int, sandbox_path: Optional[str] = None) -> str:
        """Validate run arguments and return the sandbox root for this call.

        Raises ``ValueError`` for an empty task, a turn budget outside
        1..50 or an override directory that does not exist.
        """
        if not str(task or "").strip():
            raise ValueError("task must not be empty.")
        if isinstance(max_turns, bool) or not isinstance(max_turns, int):
            raise ValueError("max_turns must be an integer.")
        if max_turns < MIN_TURNS or max_turns > MAX_TURNS:
            raise ValueError(f"max_turns must be between {MIN_TURNS} and {MAX_TURNS}.")
        if not sandbox_path:
            return self._sandbox_root
        root = paths.normalize_root(sandbox_path)
        if not os.path.isdir(root):
            raise ValueError(f"Sandbox path does not exist or is not a directory: {sandbox_path}")
        return root

    async def run_autonomous(
        self,
        task: str,
        max_turns: int = 1,
        history: Optional[Sequence[Dict[str, str]]] = None,
        sandbox_path: Optional[str] = None,
        session_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RunSummary:
        root = self.prepare(task, max_turns, sandbox_path)
        return await self._run(
            task=task,
            max_turns=max_turns,
            history=history,
            root=root,
            session_id=session_id,
            cancel_event=cancel_event,
            emit=_discard,
            streaming=False,
        )

    async def stream_autonomous(
        self,
        task: str,
        max_turns: int = 1,
        history: Optional[Sequence[Dict[str, str]]] = None,
        sandbox_path: Optional[str] = None,
        session_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[TurnEvent]:
        """Yield turn events as the run progresses.

        A producer task runs the loop and writes into a bounded channel.
        Closing this iterator early cancels the producer, which in turn
        cancels any operations still in flight.
        """
        root = self.prepare(task, max_turns, sandbox_path)
        channel = EventChannel(self._event_channel_size)

        async def produce() -> None:
            try:
                summary = await self._run(
                    task=task,
                    max_turns=max_turns,
                    history=history,
                    root=root,
                    session_id=session_id,
                    cancel_event=cancel_event,
                    emit=channel.send,
                    streaming=True,
                )
                await channel.send(
                    TurnEvent(EVENT_RUN_COMPLETE, turn=summary.turns_executed, data={"summary": summary.to_dict()})
                )
            finally:
                channel.close()

        producer = asyncio.create_task(produce())
        try:
            async for event in channel:
                yield event
            await producer
        finally:
            if not producer.done():
                producer.cancel()
                await asyncio.gather(producer, return_exceptions=True)

    async def _run(
        self,
        *,
        task: str,
        max_turns: int,
        history: Optional[Sequence[Dict[str, str]]],
        root: str,
        session_id: Optional[str],
        cancel_event: Optional[asyncio.Event],
        emit: Emit,
        streaming: bool,
    ) -> RunSummary:
        turns: List[TurnRecord] = []
        usage_total: Dict[str, Any] = {}
        conversation: List[Dict[str, str]] = [dict(m) for m in history or []]
        current_task = task
        state = RUN_STATE_RUNNING
        final_message = ""

        for turn in range(1, max_turns + 1):
            if cancel_event is not None and cancel_event.is_set():
                state = RUN_STATE_CANCELLED
                break
            await emit(TurnEvent(EVENT_TURN_START, turn=turn, data={"max_turns": max_turns}))
            log_json(logger, "turn.started", turn=turn, max_turns=max_turns, session_id=session_id)
            try:
                decision = await self._decide(current_task, conversation, root, session_id, turn, emit, streaming)
            except Exception as exc:
                code = exc.code if isinstance(exc, SandboxAgentError) else detect_error_code(str(exc))
                if not isinstance(exc, SandboxAgentError):
                    logger.exception("unexpected failure in turn %s", turn)
                error = str(exc) or type(exc).__name__
                turns.append(TurnRecord(turn=turn, status=TURN_STATUS_ERROR, error=error, error_code=code))
                await emit(TurnEvent(EVENT_ERROR, turn=turn, data={"error": error, "code": code}))
                log_json(logger, "turn.failed", level=logging.WARNING, turn=turn, code=code, error=error[:300])
                state = RUN_STATE_FAILED
                final_message = f"Run failed at turn {turn}: {describe_failure(code, error)}"
                break

            accumulate_usage(usage_total, decision.usage)
            await emit(TurnEvent(EVENT_THOUGHT, turn=turn, data={"content": decision.thought}))
            if decision.message:
                await emit(TurnEvent(EVENT_MESSAGE, turn=turn, data={"content": decision.message}))
            if decision.usage:
                await emit(TurnEvent(EVENT_USAGE, turn=turn, data={"usage": dict(decision.usage)}))

            if not decision.operations:
                turns.append(
                    TurnRecord(
                        turn=turn,
                        status=TURN_STATUS_SUCCESS,
                        thought=decision.thought,
                        message=decision.message,
                        usage=decision.usage,
                    )
                )
                await emit(TurnEvent(EVENT_DONE, turn=turn, data={"message": FINAL_MESSAGE_DONE}))
                log_json(logger, "turn.completed", turn=turn, operations=0)
                state = RUN_STATE_DONE
                final_message = FINAL_MESSAGE_DONE
                break

            summaries = [operation_summary(op) for op in decision.operations]
            await emit(TurnEvent(EVENT_OPERATIONS_START, turn=turn, data={"operations": summaries}))
            results = await self._batch.run(decision.operations, root, session_id=session_id, cancel_event=cancel_event)
            result_dicts = [r.to_dict() for r in results]
            turns.append(
                TurnRecord(
                    turn=turn,
                    status=TURN_STATUS_SUCCESS,
                    thought=decision.thought,
                    message=decision.message,
                    results=result_dicts,
                    usage=decision.usage,
                )
            )
            await emit(TurnEvent(EVENT_OPERATIONS_RESULTS, turn=turn, data={"results": result_dicts}))
            log_json(
                logger,
                "turn.completed",
                turn=turn,
                operations=len(results),
                failed=sum(1 for r in results if not r.ok),
            )
            if cancel_event is not None and cancel_event.is_set():
                state = RUN_STATE_CANCELLED
                break
            conversation.extend(fold_turn(decision, result_dicts))
            current_task = CONTINUE_PROMPT

        max_turns_reached = state == RUN_STATE_RUNNING
        if max_turns_reached:
            state = RUN_STATE_DONE
            final_message = FINAL_MESSAGE_MAX_TURNS
        elif state == RUN_STATE_CANCELLED:
            final_message = f"Run cancelled after {len(turns)} turn(s)."

        summary = RunSummary(
            status=state,
            turns_executed=len(turns),
            final_message=final_message,
            max_turns_reached=max_turns_reached,
            history=turns,
            usage=usage_total,
            session_id=session_id,
        )
        log_json(
            logger,
            "run.completed",
            status=summary.status,
            turns=summary.turns_executed,
            max_turns_reached=max_turns_reached,
            session_id=session_id,
        )
        return summary

    async def _decide(
        self,
        task: str,
        conversation: Sequence[Dict[str, str]],
        root: str,
        session_id: Optional[str],
        turn: int,
        emit: Emit,
        streaming: bool,
    ) -> AgentDecision:
        messages = await asyncio.to_thread(self._context.assemble, task, root, conversation, session_id)
        await asyncio.to_thread(self._memory.add_message, ROLE_USER, task, session_id)
        if streaming:
            decision = await self._decide_streaming(messages, turn, emit)
        else:
            decision = await self._gateway.decide(messages)
        await asyncio.to_thread(
            self._memory.add_message,
            ROLE_ASSISTANT,
            decision.model_dump_json(by_alias=True, exclude_none=True),
            session_id,
        )
        return decision

    async def _decide_streaming(self, messages: List[Dict[str, str]], turn: int, emit: Emit) -> AgentDecision:
        decision: Optional[AgentDecision] = None
        error = ""
        async for chunk in self._gateway.decide_stream(messages):
            if chunk.type == CHUNK_REASONING:
                await emit(TurnEvent(EVENT_THINKING, turn=turn, data={"content": chunk.content}))
            elif chunk.type == CHUNK_CONTENT:
                await emit(TurnEvent(EVENT_CHUNK, turn=turn, data={"content": chunk.content}))
            elif chunk.type == CHUNK_DONE:
                decision = chunk.decision
                error = chunk.error
        if decision is None:
            raise ProtocolError(error or "Model stream ended without a valid decision.")
        return decision
