"""Tests for todo extraction."""

from hypothesis import given
from hypothesis import strategies as st
from langchain_core.messages import AIMessage, HumanMessage

from langlens.engine.todos import TodoItem, describe_todos, extract_todos, parse_todo_items


def _todo_call(todos, name="write_todos", call_id="c1"):
    return {"id": call_id, "name": name, "args": {"todos": todos}, "type": "tool_call"}


A = {"id": "1", "content": "A", "status": "completed"}
B = {"id": "2", "content": "B", "status": "in_progress"}
C = {"id": "3", "content": "C", "status": "pending"}


def test_no_todo_calls_yield_empty_list():
    messages = [HumanMessage(content="hi", id="h1"), AIMessage(content="yo", id="a1")]

    assert extract_todos(messages) == []


def test_later_call_supersedes_earlier():
    messages = [
        AIMessage(content="", id="a1", tool_calls=[_todo_call([A, B])]),
        HumanMessage(content="go on", id="h2"),
        AIMessage(content="", id="a2", tool_calls=[_todo_call([B, C], call_id="c2")]),
    ]

    assert extract_todos(messages) == [B, C]


def test_last_matching_call_in_message_wins():
    messages = [
        AIMessage(content="", id="a1", tool_calls=[
            _todo_call([A], call_id="c1"),
            {"id": "c2", "name": "search", "args": {"q": "x"}, "type": "tool_call"},
            _todo_call([C], name="todo_write", call_id="c3"),
        ]),
    ]

    assert extract_todos(messages) == [C]


def test_non_list_todos_yield_empty_list():
    messages = [AIMessage(content="", id="a1", tool_calls=[
        {"id": "c1", "name": "write_todos", "args": {"todos": "oops"}, "type": "tool_call"},
    ])]

    assert extract_todos(messages) == []


def test_custom_tool_names():
    messages = [AIMessage(content="", id="a1", tool_calls=[_todo_call([A], name="plan")])]

    assert extract_todos(messages) == []
    assert extract_todos(messages, ["plan"]) == [A]


@given(st.lists(st.lists(st.sampled_from([A, B, C]), max_size=3), max_size=4))
def test_extraction_is_idempotent_and_tracks_last_call(lists):
    messages = [
        AIMessage(content="", id=f"a{i}", tool_calls=[_todo_call(todos, call_id=f"c{i}")])
        for i, todos in enumerate(lists)
    ]

    first = extract_todos(messages)

    assert extract_todos(messages) == first
    assert first == (lists[-1] if lists else [])


def test_parse_and_describe():
    assert [item.content for item in parse_todo_items([A, {"bogus": True}])] == ["A"]
    assert isinstance(parse_todo_items([B])[0], TodoItem)
    assert describe_todos([A]) == "1 Todo Item, all done"
    assert describe_todos([A, B, C]) == "3 Todo Items, 1 completed"
    assert describe_todos([B, C]) == "2 Todo Items"
    assert describe_todos([]) == ""
