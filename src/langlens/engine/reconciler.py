import asyncio
import logging
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Sequence

from langchain_core.messages import AIMessageChunk, BaseMessage

from langlens.config import LangLensConfig, default_config
from langlens.engine.errors import (
    ActionResult,
    ConnectionLostError,
    ServiceConnectionError,
    ServiceError,
    ServiceRequestError,
)
from langlens.engine.messages import (
    ASSISTANT,
    CheckpointRef,
    accumulate_chunk,
    chunk_to_message,
    coerce_messages,
    merge_messages,
    message_role,
)
from langlens.engine.thread import Thread
from langlens.service.base import ExecutionService, StreamEvent
from langlens.service.branching import (
    HistoryTree,
    branch_view,
    build_history_tree,
    build_metadata_index,
)

logger = logging.getLogger(__name__)

Listener = Callable[[Thread], None]

RUN_DONE = "done"
RUN_STOPPED = "stopped"

#########################################################################
## Helpers ##############################################################
#########################################################################

def _input_payload(messages: Optional[Sequence[BaseMessage]]) -> Optional[dict]:
    if not messages:
        return None
    payload = []
    for msg in messages:
        item = {"type": msg.type, "content": msg.content}
        if msg.id is not None:
            item["id"] = msg.id
        payload.append(item)
    return {"messages": payload}


def _error_detail(data: Any) -> str:
    if isinstance(data, dict):
        return str(data.get("message") or data.get("error") or data)
    return str(data)

#########################################################################
## History reconciler ###################################################
#########################################################################

class HistoryReconciler:
    """
    Keeps one Thread in step with the execution service.

    Stream updates are merged by message id in arrival order. Fork runs,
    branch switches and completed runs replace the sequence wholesale from
    the server's checkpoint history. Every change publishes a new Thread to
    the subscribers.
    """

    def __init__(
        self,
        service: ExecutionService,
        assistant_id: str,
        thread_id: Optional[str] = None,
        config: Optional[LangLensConfig] = None,
        *,
        is_new: Optional[bool] = None,
    ):
        self.service = service
        self.config = config or default_config()
        self._thread = Thread(thread_id=thread_id, assistant_id=assistant_id)
        # New threads have no server state until their first run.
        self._is_new = thread_id is None if is_new is None else is_new
        self._listeners: list[Listener] = []
        self._tree = HistoryTree()
        self._chunks: dict[str, AIMessageChunk] = {}
        self._run_id: Optional[str] = None
        self._last_event_id: Optional[str] = None
        self._replace_on_values = False
        self._stream_task: Optional[asyncio.Task] = None
        self._join_task: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()

    #####################################################################
    ## State and subscriptions ##########################################
    #####################################################################

    @property
    def thread(self) -> Thread:
        return self._thread

    @property
    def is_loading(self) -> bool:
        return self._thread.is_loading

    @property
    def messages(self) -> tuple[BaseMessage, ...]:
        return self._thread.messages

    @property
    def is_new(self) -> bool:
        return self._is_new

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns a function that removes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _publish(self, **changes: Any) -> None:
        self._thread = self._thread.with_changes(**changes)
        for listener in list(self._listeners):
            try:
                listener(self._thread)
            except Exception:
                logger.exception("Thread listener failed")

    async def wait_idle(self) -> None:
        """Suspend until no run is streaming."""
        await self._idle.wait()

    #####################################################################
    ## History ##########################################################
    #####################################################################

    async def _with_retry(self, operation: str, call: Callable[[], Awaitable[Any]]) -> Any:
        delay = self.config.retry_delay
        for attempt in range(self.config.max_retries + 1):
            try:
                return await call()
            except ServiceConnectionError as exc:
                if attempt >= self.config.max_retries:
                    raise ConnectionLostError(
                        f"{operation} failed after {attempt + 1} attempts: {exc}"
                    ) from exc
                logger.warning(
                    "%s failed (%s); retrying in %.1fs (%d/%d)",
                    operation, exc, delay, attempt + 1, self.config.max_retries,
                )
                await asyncio.sleep(delay)
                delay *= 2

    async def _fetch_tree(self) -> HistoryTree:
        thread_id = self._thread.thread_id
        history = await self._with_retry(
            f"Fetching history of thread {thread_id}",
            lambda: self.service.fetch_history(thread_id, self.config.history_limit),
        )
        self._tree = build_history_tree(history)
        return self._tree

    def _apply_view(self, tree: HistoryTree, branch: str, replace_messages: bool) -> None:
        view = branch_view(tree, branch)
        if replace_messages:
            messages = coerce_messages(view.head_messages)
        else:
            messages = list(self._thread.messages)
        self._publish(
            messages=messages,
            index=build_metadata_index(view, messages),
            branch=branch,
        )

    async def attach(self) -> ActionResult:
        """
        Hydrate an existing thread from its full state history.

        New threads are not sent to the service until their first submission.
        A run still in flight on the server is joined in the background.
        """
        if self._is_new:
            return ActionResult.success()
        try:
            tree = await self._fetch_tree()
        except (ServiceError, ConnectionLostError) as exc:
            logger.warning("Could not load thread %s: %s", self._thread.thread_id, exc)
            self._publish(error=exc)
            return ActionResult.failed(exc)
        self._apply_view(tree, self._thread.branch, replace_messages=True)
        self._publish(error=None)

        try:
            run_id = await self.service.find_active_run(self._thread.thread_id)
        except ServiceError as exc:
            logger.warning("Could not look up active run of thread %s: %s", self._thread.thread_id, exc)
            run_id = None
        if run_id is not None and not self.is_loading:
            self._begin_run()
            self._run_id = run_id
            stream = self.service.join_run(self._thread.thread_id, run_id)
            self._join_task = asyncio.create_task(self._execute(stream))
        return ActionResult.success()

    async def refresh(self) -> ActionResult:
        """Reload history for the active branch and replace the sequence."""
        if self.is_loading:
            return ActionResult.rejected("A run is in progress")
        if self._is_new:
            return ActionResult.ignored("Thread has no server state yet")
        try:
            tree = await self._fetch_tree()
        except (ServiceError, ConnectionLostError) as exc:
            self._publish(error=exc)
            return ActionResult.failed(exc)
        self._apply_view(tree, self._thread.branch, replace_messages=True)
        return ActionResult.success()

    async def set_branch(self, branch: str) -> ActionResult:
        """Make `branch` the active view; the sequence is replaced wholesale."""
        if self.is_loading:
            return ActionResult.rejected("A run is in progress")
        if self._is_new:
            return ActionResult.ignored("Thread has no server state yet")
        try:
            tree = await self._fetch_tree()
        except (ServiceError, ConnectionLostError) as exc:
            if not self._tree.nodes:
                self._publish(error=exc)
                return ActionResult.failed(exc)
            logger.warning("Switching branch from cached history: %s", exc)
            tree = self._tree
        self._apply_view(tree, branch, replace_messages=True)
        return ActionResult.success()

    #####################################################################
    ## Runs #############################################################
    #####################################################################

    def _begin_run(self) -> None:
        self._chunks.clear()
        self._run_id = None
        self._last_event_id = None
        self._idle.clear()
        self._publish(is_loading=True, error=None)

    async def submit(
        self,
        messages: Optional[Sequence[BaseMessage]] = None,
        *,
        checkpoint: Optional[CheckpointRef] = None,
    ) -> ActionResult:
        """
        Start a run and suspend until it completes, fails or is stopped.

        With `checkpoint` the run forks from that checkpoint (edit, or
        regenerate when `messages` is empty); otherwise it appends to the
        active branch.
        """
        if self.is_loading:
            return ActionResult.rejected("A run is already in progress")
        if not messages and checkpoint is None:
            return ActionResult.ignored("Nothing to submit")

        thread_id = self._thread.thread_id or str(uuid.uuid4())
        self._is_new = False
        self._publish(thread_id=thread_id)
        self._begin_run()
        self._replace_on_values = checkpoint is not None
        stream = self.service.stream_run(
            thread_id,
            self._thread.assistant_id,
            _input_payload(messages),
            checkpoint=checkpoint.to_payload() if checkpoint is not None else None,
            stream_subgraphs=self.config.stream_subgraphs,
            stream_resumable=self.config.stream_resumable,
        )
        return await self._execute(stream)

    async def stop(self) -> ActionResult:
        """Abort the in-flight run; content streamed so far is kept."""
        task = self._stream_task
        if task is None or task.done():
            return ActionResult.ignored("No run in progress")
        thread_id = self._thread.thread_id
        run_id = self._run_id
        if run_id is None:
            # Stream has not reported its run yet.
            try:
                run_id = await self.service.find_active_run(thread_id)
            except ServiceError as exc:
                logger.warning("Could not look up active run of thread %s: %s", thread_id, exc)
                return ActionResult.failed(exc)
            if task.done():
                await self._idle.wait()
                return ActionResult.ignored("Run already finished")
            run_id = self._run_id or run_id
            if run_id is None:
                logger.info("No active run found on thread %s; stream left running", thread_id)
                return ActionResult.failed(
                    ServiceRequestError(f"No active run on thread {thread_id} to cancel")
                )
        task.cancel()

        error: Optional[ServiceError] = None
        try:
            await self.service.cancel_run(thread_id, run_id)
        except ServiceError as exc:
            logger.warning("Could not cancel run %s of thread %s: %s", run_id, thread_id, exc)
            error = exc
        await self._idle.wait()
        if error is not None:
            return ActionResult.failed(error)
        return ActionResult.success()

    async def _execute(self, stream: AsyncIterator[StreamEvent]) -> ActionResult:
        result = ActionResult.success()
        try:
            self._stream_task = asyncio.create_task(self._consume(stream))
            outcome = await self._stream_task
            await self._refresh_after_run(replace_messages=outcome == RUN_DONE)
        except ServiceRequestError as exc:
            logger.warning("Run on thread %s failed: %s", self._thread.thread_id, exc)
            self._publish(error=exc)
            await self._refresh_after_run(replace_messages=False)
            result = ActionResult.failed(exc)
        except ConnectionLostError as exc:
            logger.warning("Lost the run stream of thread %s: %s", self._thread.thread_id, exc)
            self._publish(error=exc)
            result = ActionResult.failed(exc)
        except Exception as exc:
            logger.exception("Run on thread %s raised unexpectedly", self._thread.thread_id)
            self._publish(error=exc)
            await self._refresh_after_run(replace_messages=False)
            result = ActionResult.failed(exc)
        finally:
            self._stream_task = None
            self._replace_on_values = False
            self._publish(is_loading=False)
            self._idle.set()
        return result

    async def _refresh_after_run(self, replace_messages: bool) -> None:
        try:
            tree = await self._fetch_tree()
        except (ServiceError, ConnectionLostError) as exc:
            logger.warning("Could not refresh history of thread %s: %s", self._thread.thread_id, exc)
            return
        if not tree.nodes:
            return
        branch = tree.latest_branch if replace_messages else self._thread.branch
        self._apply_view(tree, branch, replace_messages=replace_messages)

    async def _consume(self, stream: AsyncIterator[StreamEvent]) -> str:
        delay = self.config.retry_delay
        attempt = 0
        try:
            while True:
                try:
                    await self._drain(stream)
                    return RUN_DONE
                except ServiceConnectionError as exc:
                    if (
                        self._run_id is None
                        or not self.config.stream_resumable
                        or attempt >= self.config.max_retries
                    ):
                        raise ConnectionLostError(
                            f"Run stream of thread {self._thread.thread_id} lost: {exc}"
                        ) from exc
                    attempt += 1
                    logger.warning(
                        "Run stream dropped (%s); rejoining run %s in %.1fs (%d/%d)",
                        exc, self._run_id, delay, attempt, self.config.max_retries,
                    )
                    await asyncio.sleep(delay)
                    delay *= 2
                    stream = self.service.join_run(
                        self._thread.thread_id,
                        self._run_id,
                        last_event_id=self._last_event_id,
                    )
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and hasattr(task, "uncancel"):
                task.uncancel()
            return RUN_STOPPED

    async def _drain(self, stream: AsyncIterator[StreamEvent]) -> None:
        try:
            async for event in stream:
                if event.id is not None:
                    self._last_event_id = event.id
                self._apply_event(event)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception:
                    logger.debug("Closing the run stream failed", exc_info=True)

    #####################################################################
    ## Stream events ####################################################
    #####################################################################

    def _apply_event(self, event: StreamEvent) -> None:
        if event.is_subgraph:
            return
        name = event.name
        data = event.data
        if name == "metadata":
            if isinstance(data, dict) and isinstance(data.get("run_id"), str):
                self._run_id = data["run_id"]
        elif name == "values":
            self._apply_values(data)
        elif name == "messages":
            self._apply_message_tuple(data)
        elif name in ("messages/partial", "messages/complete"):
            if isinstance(data, list):
                self._merge(coerce_messages(item for item in data if isinstance(item, dict)))
        elif name == "error":
            raise ServiceRequestError(_error_detail(data))

    def _apply_values(self, data: Any) -> None:
        if not isinstance(data, dict) or not isinstance(data.get("messages"), list):
            return
        incoming = coerce_messages(data["messages"])
        for msg in incoming:
            if msg.id is not None:
                self._chunks.pop(msg.id, None)
        if self._replace_on_values:
            self._replace_on_values = False
            self._publish(messages=incoming)
        else:
            self._merge(incoming)

    def _apply_message_tuple(self, data: Any) -> None:
        if isinstance(data, (list, tuple)) and data:
            payload = data[0]
        else:
            payload = data
        if not isinstance(payload, dict):
            return
        msg_type = payload.get("type")
        if msg_type == "AIMessageChunk" or (
            message_role(payload) == ASSISTANT and "tool_call_chunks" in payload
        ):
            msg_id = payload.get("id")
            if not msg_id:
                return
            chunk = accumulate_chunk(self._chunks.get(msg_id), payload)
            self._chunks[msg_id] = chunk
            self._merge([chunk_to_message(chunk)])
        else:
            self._merge(coerce_messages([payload]))

    def _merge(self, incoming: Sequence[BaseMessage]) -> None:
        if not incoming:
            return
        self._publish(messages=merge_messages(self._thread.messages, incoming))
