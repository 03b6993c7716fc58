import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

import pytest

from langlens.config import LangLensConfig
from langlens.service.base import ExecutionService, ListQueryParams, StreamEvent

THREAD_ID = "thread-1"
ASSISTANT_ID = "agent"

#########################################################################
## Payload builders #####################################################
#########################################################################

def checkpoint(checkpoint_id: str, thread_id: str = THREAD_ID) -> dict:
    return {"thread_id": thread_id, "checkpoint_ns": "", "checkpoint_id": checkpoint_id}


def state(checkpoint_id: str, parent_id: Optional[str], messages: list[dict]) -> dict:
    return {
        "values": {"messages": messages},
        "checkpoint": checkpoint(checkpoint_id),
        "parent_checkpoint": checkpoint(parent_id) if parent_id else None,
        "next": [],
        "metadata": {},
        "created_at": None,
    }


def human(msg_id: str, text: str) -> dict:
    return {"type": "human", "id": msg_id, "content": [{"type": "text", "text": text}]}


def ai(msg_id: str, text: str, tool_calls: Optional[list[dict]] = None) -> dict:
    return {"type": "ai", "id": msg_id, "content": text, "tool_calls": tool_calls or []}


def tool(msg_id: str, tool_call_id: str, text: str) -> dict:
    return {"type": "tool", "id": msg_id, "tool_call_id": tool_call_id, "content": text}


def token(msg_id: str, text: str, event_id: Optional[str] = None) -> StreamEvent:
    chunk = {"type": "AIMessageChunk", "id": msg_id, "content": text}
    return StreamEvent("messages", [chunk, {"langgraph_node": "agent"}], event_id)


def values(*messages: dict, event_id: Optional[str] = None) -> StreamEvent:
    return StreamEvent("values", {"messages": list(messages)}, event_id)


def metadata(run_id: str) -> StreamEvent:
    return StreamEvent("metadata", {"run_id": run_id}, None)

#########################################################################
## Fake execution service ###############################################
#########################################################################

@dataclass
class FakeRun:
    """
    Scripted run stream.

    `events` items are StreamEvents, exceptions (raised at that point) or an
    asyncio.Event the stream waits on after signalling `paused`. `history`
    becomes the service's history once the stream is exhausted.
    """

    events: list[Any] = field(default_factory=list)
    history: Optional[list[dict]] = None


class FakeExecutionService(ExecutionService):
    def __init__(self):
        self.history: list[dict] = []
        self.runs: list[FakeRun] = []
        self.joins: list[FakeRun] = []
        self.active_run: Optional[str] = None
        self.threads: list[dict] = []
        self.assistants: list[dict] = []
        self.calls: list[tuple] = []
        self.stream_calls: list[dict] = []
        self.history_error: Optional[Exception] = None
        self.search_error: Optional[Exception] = None
        self.cancel_error: Optional[Exception] = None
        self.paused = asyncio.Event()

    async def fetch_history(self, thread_id: str, limit: int) -> list[dict]:
        self.calls.append(("fetch_history", thread_id, limit))
        if self.history_error is not None:
            raise self.history_error
        return list(self.history)

    async def _play(self, run: FakeRun):
        for item in run.events:
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, asyncio.Event):
                self.paused.set()
                await item.wait()
                continue
            yield item
        if run.history is not None:
            self.history = run.history

    async def stream_run(
        self,
        thread_id: str,
        assistant_id: str,
        input: Optional[dict],
        *,
        checkpoint: Optional[dict] = None,
        stream_subgraphs: bool = True,
        stream_resumable: bool = True,
    ):
        self.calls.append(("stream_run", thread_id))
        self.stream_calls.append({
            "thread_id": thread_id,
            "assistant_id": assistant_id,
            "input": input,
            "checkpoint": checkpoint,
            "stream_subgraphs": stream_subgraphs,
            "stream_resumable": stream_resumable,
        })
        run = self.runs.pop(0) if self.runs else FakeRun()
        async for event in self._play(run):
            yield event

    async def join_run(self, thread_id: str, run_id: str, *, last_event_id: Optional[str] = None):
        self.calls.append(("join_run", run_id, last_event_id))
        run = self.joins.pop(0) if self.joins else FakeRun()
        async for event in self._play(run):
            yield event

    async def cancel_run(self, thread_id: str, run_id: str) -> None:
        self.calls.append(("cancel_run", thread_id, run_id))
        if self.cancel_error is not None:
            raise self.cancel_error

    async def find_active_run(self, thread_id: str) -> Optional[str]:
        self.calls.append(("find_active_run", thread_id))
        return self.active_run

    async def search_threads(self, params: ListQueryParams) -> list[dict]:
        self.calls.append(("search_threads", params.limit, params.sort_by, params.sort_order))
        if self.search_error is not None:
            raise self.search_error
        return list(self.threads)

    async def delete_thread(self, thread_id: str) -> None:
        self.calls.append(("delete_thread", thread_id))
        if self.search_error is not None:
            raise self.search_error
        self.threads = [t for t in self.threads if t.get("thread_id") != thread_id]

    async def search_assistants(self, params: ListQueryParams) -> list[dict]:
        self.calls.append(("search_assistants", params.limit, params.sort_by, params.sort_order))
        if self.search_error is not None:
            raise self.search_error
        return list(self.assistants)

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]

#########################################################################
## Fixtures #############################################################
#########################################################################

@pytest.fixture
def service() -> FakeExecutionService:
    return FakeExecutionService()


@pytest.fixture
def config() -> LangLensConfig:
    return LangLensConfig(retry_delay=0.0, max_retries=2)


@pytest.fixture
def forked_history() -> list[dict]:
    """
    Thread whose first human message was edited once.

    s0 is the input checkpoint; s1/s2 hold the original turn and s1b/s2b the
    edited one, written later. Newest first.
    """
    return [
        state("s2b", "s1b", [human("h1b", "hello again"), ai("a1b", "hi again")]),
        state("s1b", "s0", [human("h1b", "hello again")]),
        state("s2", "s1", [human("h1", "hello"), ai("a1", "hi")]),
        state("s1", "s0", [human("h1", "hello")]),
        state("s0", None, []),
    ]


@pytest.fixture
def linear_history() -> list[dict]:
    return [
        state("s2", "s1", [human("h1", "hello"), ai("a1", "hi")]),
        state("s1", "s0", [human("h1", "hello")]),
        state("s0", None, []),
    ]
