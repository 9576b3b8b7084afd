from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence

from sandbox_agent.domain.operations import AgentDecision

CHUNK_REASONING = "reasoning"
CHUNK_CONTENT = "content"
CHUNK_DONE = "done"


@dataclass(frozen=True)
class ModelChunk:
    type: str
    content: str = ""
    decision: Optional[AgentDecision] = None
    error: str = ""


class ModelGateway(Protocol):
    async def decide(self, messages: Sequence[Dict[str, str]]) -> AgentDecision:
        ...

    def decide_stream(self, messages: Sequence[Dict[str, str]]) -> AsyncIterator[ModelChunk]:
        ...

    async def version(self) -> str:
        ...


class EmbeddingClient(Protocol):
    async def embed(self, text: str) -> List[float]:
        ...

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        ...


class WebSearcher(Protocol):
    async def search(self, query: str) -> Dict[str, Any]:
        ...


class TemplateGenerator(Protocol):
    def generate(self, template_name: str, target_dir: str, variables: Dict[str, str]) -> List[str]:
        ...
