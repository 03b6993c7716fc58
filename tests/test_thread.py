"""Tests for the immutable thread snapshot and service helpers."""

import httpx
import pytest
from langchain_core.messages import AIMessage, HumanMessage, ToolMessage

from langlens.engine.errors import ActionResult, ServiceConnectionError, ServiceRequestError
from langlens.engine.thread import Thread
from langlens.service.base import StreamEvent
from langlens.service.client import check_api_health
from langlens.service.langgraph_service import _translate_error


def _thread():
    todo_call = {"id": "c1", "name": "write_todos", "args": {"todos": [{"content": "x"}]}}
    return Thread(thread_id="t", assistant_id="a").with_changes(messages=[
        HumanMessage(content="hi", id="h1"),
        AIMessage(content="", id="a1", tool_calls=[todo_call]),
        ToolMessage(content="ok", tool_call_id="c1", id="t1"),
    ])


def test_with_changes_returns_new_snapshot():
    thread = _thread()
    loading = thread.with_changes(is_loading=True)

    assert not thread.is_loading
    assert loading.is_loading
    assert isinstance(loading.messages, tuple)


def test_projections():
    thread = _thread()

    assert [m.id for m in thread.visible_messages] == ["h1", "a1"]
    assert thread.get_message("a1").id == "a1"
    assert thread.get_message("zzz") is None
    assert thread.tool_result_for("c1").content == "ok"
    assert thread.todos() == [{"content": "x"}]
    assert thread.todos(["other"]) == []


def test_stream_event_names():
    assert StreamEvent("values", {}).name == "values"
    sub = StreamEvent("messages|agent:1", [])
    assert sub.name == "messages"
    assert sub.is_subgraph


def test_action_results():
    assert ActionResult.success().ok
    failed = ActionResult.failed(ValueError("bad"))
    assert not failed.ok
    assert failed.reason == "bad"


def test_transport_errors_translate():
    request = httpx.Request("GET", "http://x")
    response = httpx.Response(409, request=request)

    assert isinstance(_translate_error(httpx.ConnectError("refused")), ServiceConnectionError)
    assert isinstance(_translate_error(httpx.StreamClosed()), ServiceConnectionError)
    assert isinstance(_translate_error(ValueError("bad json")), ServiceRequestError)
    translated = _translate_error(httpx.HTTPStatusError("conflict", request=request, response=response))
    assert isinstance(translated, ServiceRequestError)
    assert translated.status_code == 409


@pytest.mark.asyncio
async def test_health_check_reports_unreachable_server():
    assert not await check_api_health("http://127.0.0.1:9", timeout=0.5)
