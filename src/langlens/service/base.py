from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

#########################################################################
## Service payloads #####################################################
#########################################################################

@dataclass(frozen=True)
class StreamEvent:
    """One server-sent event of a run stream."""

    event: str
    data: Any
    id: Optional[str] = None

    @property
    def name(self) -> str:
        return self.event.split("|", 1)[0]

    @property
    def is_subgraph(self) -> bool:
        return "|" in self.event


class ListQueryParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    limit: int = Field(default=50, gt=0, le=1000)
    sort_by: str = Field(default="updated_at")
    sort_order: Literal["asc", "desc"] = Field(default="desc")


DEFAULT_THREADS_PARAMS = ListQueryParams(limit=50, sort_by="updated_at", sort_order="desc")
DEFAULT_ASSISTANTS_PARAMS = ListQueryParams(limit=50, sort_by="name", sort_order="asc")

#########################################################################
## Execution service contract ###########################################
#########################################################################

class ExecutionService(ABC):
    """
    Remote agent runtime owning threads, runs and the checkpoint graph.

    History states are dicts shaped like LangGraph thread states
    (`values`, `checkpoint`, `parent_checkpoint`, `created_at`, ...), newest
    first.
    """

    @abstractmethod
    async def fetch_history(self, thread_id: str, limit: int) -> list[dict]:
        ...

    @abstractmethod
    def stream_run(
        self,
        thread_id: str,
        assistant_id: str,
        input: Optional[dict],
        *,
        checkpoint: Optional[dict] = None,
        stream_subgraphs: bool = True,
        stream_resumable: bool = True,
    ) -> AsyncIterator[StreamEvent]:
        ...

    @abstractmethod
    def join_run(
        self,
        thread_id: str,
        run_id: str,
        *,
        last_event_id: Optional[str] = None,
    ) -> AsyncIterator[StreamEvent]:
        ...

    @abstractmethod
    async def cancel_run(self, thread_id: str, run_id: str) -> None:
        ...

    @abstractmethod
    async def find_active_run(self, thread_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def search_threads(self, params: ListQueryParams) -> list[dict]:
        ...

    @abstractmethod
    async def delete_thread(self, thread_id: str) -> None:
        ...

    @abstractmethod
    async def search_assistants(self, params: ListQueryParams) -> list[dict]:
        ...
