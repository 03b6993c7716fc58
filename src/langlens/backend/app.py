import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from langlens.config import LangLensConfig, load_config
from langlens.engine.controller import ThreadController
from langlens.engine.errors import ActionResult, ApiError
from langlens.engine.messages import human_text_message
from langlens.engine.navigator import BranchNavigator
from langlens.engine.reconciler import HistoryReconciler
from langlens.preferences import AssistantMemory, PreferenceStore, open_preference_store
from langlens.service.base import ExecutionService, ListQueryParams
from langlens.service.langgraph_service import LangGraphExecutionService
from langlens.service.queries import QueryCache, ThreadQueries
from langlens.utils import serialize_message

from langlens.backend.models import (
    ActionResponse,
    AssistantsResponse,
    AttachRequest,
    BranchRequest,
    EditRequest,
    RegenerateRequest,
    SubmitRequest,
    ThreadStateResponse,
    ThreadsResponse,
)
from langlens.backend.views import assistant_summary, thread_state, thread_summary

logger = logging.getLogger(__name__)

#########################################################################
## Thread sessions ######################################################
#########################################################################

@dataclass
class ThreadSession:
    reconciler: HistoryReconciler
    controller: ThreadController
    navigator: BranchNavigator
    unsubscribe: Callable[[], None] = lambda: None
    tasks: set = field(default_factory=set)


def _action_response(result: ActionResult) -> ActionResponse:
    return ActionResponse(status=result.status, reason=result.reason)


def _raise_api_error(exc: ApiError) -> None:
    raise HTTPException(status_code=exc.status_code or 502, detail=str(exc)) from exc


def _same_snapshot(previous: dict, current: dict) -> bool:
    return {k: v for k, v in previous.items() if k != "event_cursor"} == {
        k: v for k, v in current.items() if k != "event_cursor"
    }


def create_app(
    config: Optional[LangLensConfig] = None,
    service: Optional[ExecutionService] = None,
    preferences: Optional[PreferenceStore] = None,
) -> FastAPI:
    """
    Build the FastAPI app serving thread sessions over HTTP and SSE.

    Each attached thread gets a reconciler, controller and navigator. Every
    published thread change is appended to a per-thread event buffer that
    `/threads/{id}/events` streams to the front end.
    """
    config = config or load_config()
    service = service or LangGraphExecutionService(config)
    preferences = preferences or open_preference_store(config.preferences_db)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        for thread_id in list(app.state.sessions):
            close_session(thread_id)

    app = FastAPI(lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=r"https?://(localhost|127\.0\.0\.1)(:\d+)?",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.config = config
    app.state.service = service
    app.state.queries = ThreadQueries(service, QueryCache(stale_time=config.stale_time))
    app.state.assistant_memory = AssistantMemory(preferences)
    app.state.sessions = {}  # dict[str, ThreadSession]
    app.state.event_buffers = {}  # dict[str, list[dict]]
    app.state.event_offsets = {}  # dict[str, int], events dropped from the buffer front
    app.state.event_waiters = {}  # dict[str, asyncio.Condition]
    app.state.notify_tasks = set()  # set[asyncio.Task]

    def ensure_event_state(thread_id: str) -> None:
        if thread_id not in app.state.event_buffers:
            app.state.event_buffers[thread_id] = []
            app.state.event_offsets[thread_id] = 0
        if thread_id not in app.state.event_waiters:
            app.state.event_waiters[thread_id] = asyncio.Condition()

    def get_event_cursor(thread_id: str) -> int:
        buffer = app.state.event_buffers.get(thread_id)
        if buffer is None:
            return 0
        return app.state.event_offsets.get(thread_id, 0) + len(buffer)

    async def notify_waiters(thread_id: str) -> None:
        condition = app.state.event_waiters.get(thread_id)
        if condition is None:
            return
        async with condition:
            condition.notify_all()

    def state_of(thread_id: str, session: ThreadSession) -> ThreadStateResponse:
        return thread_state(
            session.controller,
            session.navigator,
            config.todo_tool_names,
            event_cursor=get_event_cursor(thread_id),
        )

    def append_snapshot(thread_id: str, session: ThreadSession) -> None:
        ensure_event_state(thread_id)
        payload = state_of(thread_id, session).model_dump(mode="json")
        buffer = app.state.event_buffers[thread_id]
        if buffer and _same_snapshot(buffer[-1], payload):
            return
        buffer.append(payload)
        excess = len(buffer) - config.event_buffer_size
        if excess > 0:
            # Every entry is a full snapshot, so older ones can go.
            del buffer[:excess]
            app.state.event_offsets[thread_id] += excess
        task = asyncio.get_running_loop().create_task(notify_waiters(thread_id))
        app.state.notify_tasks.add(task)
        task.add_done_callback(app.state.notify_tasks.discard)

    def get_session(thread_id: str) -> ThreadSession:
        session = app.state.sessions.get(thread_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Thread not attached")
        return session

    def get_message(session: ThreadSession, message_id: str):
        message = session.reconciler.thread.get_message(message_id)
        if message is None:
            raise HTTPException(status_code=404, detail="Message not found")
        return message

    def run_in_background(
        thread_id: str,
        session: ThreadSession,
        action: Callable[[], Awaitable[ActionResult]],
        name: str,
    ) -> None:
        async def _runner() -> None:
            result = await action()
            app.state.queries.invalidate_threads()
            if not result.ok:
                logger.info("%s on thread %s: %s (%s)", name, thread_id, result.status, result.reason)

        task = asyncio.create_task(_runner())
        session.tasks.add(task)
        task.add_done_callback(session.tasks.discard)

    def close_session(thread_id: str) -> None:
        session = app.state.sessions.pop(thread_id, None)
        if session is None:
            return
        session.unsubscribe()
        for task in list(session.tasks):
            task.cancel()

    #####################################################################
    ## Lists ############################################################
    #####################################################################

    @app.get("/threads", response_model=ThreadsResponse)
    async def get_threads(
        limit: int = 50,
        sort_by: str = "updated_at",
        sort_order: str = "desc",
    ):
        try:
            params = ListQueryParams(limit=limit, sort_by=sort_by, sort_order=sort_order)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        try:
            threads = await app.state.queries.search_threads(params)
        except ApiError as exc:
            _raise_api_error(exc)
        return ThreadsResponse(threads=[thread_summary(thread) for thread in threads])

    @app.delete("/threads/{thread_id}", response_model=ActionResponse)
    async def delete_thread(thread_id: str):
        try:
            await app.state.queries.delete_thread(thread_id)
        except ApiError as exc:
            _raise_api_error(exc)
        close_session(thread_id)
        app.state.event_buffers.pop(thread_id, None)
        app.state.event_offsets.pop(thread_id, None)
        app.state.event_waiters.pop(thread_id, None)
        return ActionResponse(status="ok")

    @app.get("/assistants", response_model=AssistantsResponse)
    async def get_assistants():
        try:
            assistants = await app.state.queries.search_assistants()
        except ApiError as exc:
            _raise_api_error(exc)
        return AssistantsResponse(
            assistants=[assistant_summary(assistant) for assistant in assistants],
            default_assistant_id=app.state.assistant_memory.resolve(assistants),
        )

    #####################################################################
    ## Thread sessions ##################################################
    #####################################################################

    @app.post("/threads/{thread_id}/attach", response_model=ThreadStateResponse)
    async def attach_thread(thread_id: str, req: AttachRequest):
        assistant_id = req.assistant_id
        if not assistant_id:
            try:
                assistants = await app.state.queries.search_assistants()
            except ApiError as exc:
                _raise_api_error(exc)
            assistant_id = app.state.assistant_memory.resolve(assistants)
        if not assistant_id:
            raise HTTPException(status_code=400, detail="No assistant available")

        close_session(thread_id)
        reconciler = HistoryReconciler(
            service,
            assistant_id,
            thread_id=thread_id,
            config=config,
            is_new=req.new,
        )
        session = ThreadSession(
            reconciler=reconciler,
            controller=ThreadController(reconciler),
            navigator=BranchNavigator(reconciler),
        )
        session.unsubscribe = reconciler.subscribe(lambda _thread: append_snapshot(thread_id, session))
        app.state.sessions[thread_id] = session
        app.state.assistant_memory.remember(assistant_id)

        result = await reconciler.attach()
        if not result.ok:
            logger.warning("Attaching thread %s: %s", thread_id, result.reason)
        return state_of(thread_id, session)

    @app.get("/threads/{thread_id}/state", response_model=ThreadStateResponse)
    async def get_thread_state(thread_id: str):
        return state_of(thread_id, get_session(thread_id))

    @app.post("/threads/{thread_id}/submit", response_model=ActionResponse)
    async def submit(thread_id: str, req: SubmitRequest):
        session = get_session(thread_id)
        if session.reconciler.is_loading:
            raise HTTPException(status_code=409, detail="A run is in progress")
        if not req.text.strip():
            return ActionResponse(status="ignored", reason="Empty message")
        if session.reconciler.is_new:
            first = serialize_message(human_text_message(req.text))
            app.state.queries.add_pending_thread(thread_id, first)
        run_in_background(
            thread_id, session, lambda: session.controller.send(req.text), "submit",
        )
        return ActionResponse(status="accepted")

    @app.post("/threads/{thread_id}/edit", response_model=ActionResponse)
    async def edit(thread_id: str, req: EditRequest):
        session = get_session(thread_id)
        message = get_message(session, req.message_id)
        result = session.controller.start_edit(message)
        if not result.ok:
            return _action_response(result)
        session.controller.update_edit(req.text)
        metadata = session.reconciler.thread.metadata_of(message)
        if metadata is None or metadata.parent_checkpoint is None:
            return _action_response(await session.controller.confirm_edit())
        run_in_background(thread_id, session, session.controller.confirm_edit, "edit")
        return ActionResponse(status="accepted")

    @app.post("/threads/{thread_id}/regenerate", response_model=ActionResponse)
    async def regenerate(thread_id: str, req: RegenerateRequest):
        session = get_session(thread_id)
        message = get_message(session, req.message_id)
        if session.reconciler.is_loading:
            raise HTTPException(status_code=409, detail="A run is in progress")
        if not session.controller.can_regenerate(message):
            return ActionResponse(status="rejected", reason="Message cannot be regenerated")
        run_in_background(
            thread_id, session, lambda: session.controller.regenerate(message), "regenerate",
        )
        return ActionResponse(status="accepted")

    @app.post("/threads/{thread_id}/branch", response_model=ActionResponse)
    async def switch_branch(thread_id: str, req: BranchRequest):
        session = get_session(thread_id)
        if req.branch is not None:
            return _action_response(await session.reconciler.set_branch(req.branch))
        if req.message_id is None or req.direction is None:
            raise HTTPException(status_code=422, detail="Either branch or message_id and direction is required")
        message = get_message(session, req.message_id)
        return _action_response(await session.navigator.switch_branch(message, req.direction))

    @app.post("/threads/{thread_id}/stop", response_model=ActionResponse)
    async def stop(thread_id: str):
        session = get_session(thread_id)
        return _action_response(await session.reconciler.stop())

    @app.get("/threads/{thread_id}/events")
    async def events(
        thread_id: str,
        request: Request,
        from_idx: Optional[int] = None,
    ):
        get_session(thread_id)
        ensure_event_state(thread_id)

        start_idx = from_idx
        last_event_id = request.headers.get("Last-Event-ID")
        if last_event_id:
            try:
                start_idx = int(last_event_id) + 1
            except ValueError:
                start_idx = 0
        if start_idx is None:
            start_idx = 0

        async def event_stream():
            idx = max(start_idx, 0)
            while True:
                while True:
                    buffer = app.state.event_buffers.get(thread_id, [])
                    offset = app.state.event_offsets.get(thread_id, 0)
                    # Trimmed snapshots are superseded by the oldest kept one.
                    idx = min(max(idx, offset), offset + len(buffer))
                    if idx >= offset + len(buffer):
                        break
                    payload = buffer[idx - offset]
                    yield f"id: {idx}\n"
                    yield f"data: {json.dumps(payload)}\n\n"
                    idx += 1
                if await request.is_disconnected():
                    break
                condition = app.state.event_waiters.get(thread_id)
                if condition is None:
                    break
                async with condition:
                    if idx >= get_event_cursor(thread_id):
                        await condition.wait()

        return StreamingResponse(event_stream(), media_type="text/event-stream")

    return app
