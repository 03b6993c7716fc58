import logging
from typing import Any, AsyncIterator, Optional

import httpx
from langgraph_sdk.client import LangGraphClient

from langlens.config import LangLensConfig
from langlens.engine.errors import ServiceConnectionError, ServiceRequestError
from langlens.service.base import ExecutionService, ListQueryParams, StreamEvent
from langlens.service.client import create_client

logger = logging.getLogger(__name__)

#########################################################################
## LangGraph execution service ##########################################
#########################################################################

STREAM_MODES = ["values", "messages-tuple"]

# Undecodable payloads from the SDK surface as ValueError.
SERVICE_FAILURES = (httpx.HTTPError, httpx.StreamError, ValueError)


def _translate_error(exc: Exception) -> Exception:
    if isinstance(exc, (httpx.TransportError, httpx.StreamError)):
        return ServiceConnectionError(str(exc) or exc.__class__.__name__)
    if isinstance(exc, httpx.HTTPStatusError):
        return ServiceRequestError(str(exc), status_code=exc.response.status_code)
    return ServiceRequestError(str(exc))


def _to_event(part: Any) -> StreamEvent:
    return StreamEvent(
        event=part.event,
        data=part.data,
        id=getattr(part, "id", None),
    )


class LangGraphExecutionService(ExecutionService):
    """ExecutionService backed by a LangGraph API server through langgraph_sdk."""

    def __init__(self, config: LangLensConfig, client: Optional[LangGraphClient] = None):
        self.config = config
        self.client = client or create_client(config)

    async def fetch_history(self, thread_id: str, limit: int) -> list[dict]:
        try:
            states = await self.client.threads.get_history(thread_id, limit=limit)
        except SERVICE_FAILURES as exc:
            raise _translate_error(exc) from exc
        return [dict(state) for state in states]

    async def stream_run(
        self,
        thread_id: str,
        assistant_id: str,
        input: Optional[dict],
        *,
        checkpoint: Optional[dict] = None,
        stream_subgraphs: bool = True,
        stream_resumable: bool = True,
    ) -> AsyncIterator[StreamEvent]:
        kwargs: dict[str, Any] = {
            "input": input,
            "stream_mode": list(STREAM_MODES),
            "stream_subgraphs": stream_subgraphs,
            "stream_resumable": stream_resumable,
            # New threads are created by their first run.
            "if_not_exists": "create",
        }
        if checkpoint is not None:
            kwargs["checkpoint"] = checkpoint
        logger.debug("Starting run on thread %s (checkpoint=%s)", thread_id, checkpoint)
        try:
            async for part in self.client.runs.stream(thread_id, assistant_id, **kwargs):
                yield _to_event(part)
        except SERVICE_FAILURES as exc:
            raise _translate_error(exc) from exc

    async def join_run(
        self,
        thread_id: str,
        run_id: str,
        *,
        last_event_id: Optional[str] = None,
    ) -> AsyncIterator[StreamEvent]:
        logger.debug("Joining run %s on thread %s from event %s", run_id, thread_id, last_event_id)
        try:
            async for part in self.client.runs.join_stream(
                thread_id,
                run_id,
                last_event_id=last_event_id,
            ):
                yield _to_event(part)
        except SERVICE_FAILURES as exc:
            raise _translate_error(exc) from exc

    async def cancel_run(self, thread_id: str, run_id: str) -> None:
        try:
            await self.client.runs.cancel(thread_id, run_id)
        except SERVICE_FAILURES as exc:
            raise _translate_error(exc) from exc

    async def find_active_run(self, thread_id: str) -> Optional[str]:
        try:
            runs = await self.client.runs.list(thread_id, limit=1, status="running")
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                return None
            raise _translate_error(exc) from exc
        except SERVICE_FAILURES as exc:
            raise _translate_error(exc) from exc
        for run in runs:
            run_id = run.get("run_id")
            if isinstance(run_id, str) and run_id:
                return run_id
        return None

    async def search_threads(self, params: ListQueryParams) -> list[dict]:
        try:
            threads = await self.client.threads.search(
                limit=params.limit,
                sort_by=params.sort_by,
                sort_order=params.sort_order,
            )
        except SERVICE_FAILURES as exc:
            raise _translate_error(exc) from exc
        return [dict(thread) for thread in threads]

    async def delete_thread(self, thread_id: str) -> None:
        try:
            await self.client.threads.delete(thread_id)
        except SERVICE_FAILURES as exc:
            raise _translate_error(exc) from exc

    async def search_assistants(self, params: ListQueryParams) -> list[dict]:
        try:
            assistants = await self.client.assistants.search(
                limit=params.limit,
                sort_by=params.sort_by,
                sort_order=params.sort_order,
            )
        except SERVICE_FAILURES as exc:
            raise _translate_error(exc) from exc
        return [dict(assistant) for assistant in assistants]
