import json
import logging
from typing import Any, AsyncIterator, Dict, List, Literal, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from sandbox_agent.domain.runs import MAX_TURNS, MIN_TURNS
from sandbox_agent.events.channel import EVENT_ERROR, TurnEvent
from sandbox_agent.services.agent_service import AgentService
from sandbox_agent.util import redact

logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"


class HistoryMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class TaskRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    task: str = Field(min_length=1)
    max_turns: int = Field(default=1, ge=MIN_TURNS, le=MAX_TURNS)
    sandbox_path: Optional[str] = Field(default=None, alias="sandboxPath")
    session_id: Optional[str] = None
    history: Optional[List[HistoryMessage]] = None

    def history_dicts(self) -> Optional[List[Dict[str, str]]]:
        if self.history is None:
            return None
        return [item.model_dump() for item in self.history]


def _ndjson_line(event: TurnEvent) -> str:
    return json.dumps(event.to_dict(), ensure_ascii=False, default=str) + "\n"


def create_app(agent_service: AgentService) -> FastAPI:
    app = FastAPI(title="Sandbox Agent", version="0.1.0")

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"error": "Validation Error", "details": jsonable_encoder(exc.errors(), custom_encoder={Exception: str})},
        )

    @app.exception_handler(ValueError)
    async def _value_error(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": redact(str(exc)) or "Internal Server Error"})

    @app.on_event("shutdown")
    async def _shutdown_service() -> None:
        await agent_service.aclose()

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return await agent_service.health()

    @app.post("/task")
    async def run_task(req: TaskRequest) -> Dict[str, Any]:
        summary = await agent_service.run_autonomous(
            task=req.task,
            max_turns=req.max_turns,
            history=req.history_dicts(),
            sandbox_path=req.sandbox_path,
            session_id=req.session_id,
        )
        return summary.to_dict()

    @app.post("/task/stream")
    async def stream_task(req: TaskRequest) -> StreamingResponse:
        # Validate before the 200 status line goes out.
        agent_service.prepare(req.task, req.max_turns, req.sandbox_path)

        async def _event_lines() -> AsyncIterator[str]:
            events = agent_service.stream_autonomous(
                task=req.task,
                max_turns=req.max_turns,
                history=req.history_dicts(),
                sandbox_path=req.sandbox_path,
                session_id=req.session_id,
            )
            try:
                async for event in events:
                    yield _ndjson_line(event)
            except Exception as exc:
                logger.exception("stream aborted")
                yield _ndjson_line(TurnEvent(EVENT_ERROR, turn=0, data={"error": redact(str(exc)), "code": "internal_error"}))
            finally:
                await events.aclose()

        return StreamingResponse(
            _event_lines(),
            media_type=NDJSON_MEDIA_TYPE,
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    return app
