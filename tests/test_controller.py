"""Tests for edit, regenerate and toolbar behaviour."""

import asyncio

import pytest
from conftest import ASSISTANT_ID, THREAD_ID, FakeRun, ai, checkpoint, human, state, token

from langlens.engine.controller import ThreadController
from langlens.engine.errors import IGNORED, REJECTED
from langlens.engine.navigator import BranchNavigator
from langlens.engine.reconciler import HistoryReconciler


async def _attached(service, config, history):
    service.history = history
    reconciler = HistoryReconciler(service, ASSISTANT_ID, thread_id=THREAD_ID, config=config)
    await reconciler.attach()
    return reconciler, ThreadController(reconciler)


@pytest.mark.asyncio
async def test_edit_forks_at_parent_checkpoint(service, config, linear_history, forked_history):
    reconciler, controller = await _attached(service, config, linear_history)
    service.runs.append(FakeRun(
        events=[token("a1b", "hi again")],
        history=forked_history,
    ))
    h1 = reconciler.thread.get_message("h1")

    assert controller.start_edit(h1).ok
    assert controller.editing.buffer == "hello"
    controller.update_edit("hello again")
    result = await controller.confirm_edit()

    assert result.ok
    call = service.stream_calls[0]
    assert call["checkpoint"] == checkpoint("s0")
    assert call["input"]["messages"][0]["content"] == [{"type": "text", "text": "hello again"}]
    assert call["stream_subgraphs"] and call["stream_resumable"]
    assert controller.editing is None

    navigator = BranchNavigator(reconciler)
    edited = reconciler.messages[0]
    assert edited.id == "h1b"
    assert reconciler.thread.metadata_of(edited).branch_options == ("s1", "s1b")
    assert navigator.branch_label(edited) == "2 of 2"


@pytest.mark.asyncio
async def test_edit_without_parent_checkpoint_is_silent_noop(service, config):
    history = [state("s1", None, [human("h1", "hello")])]
    reconciler, controller = await _attached(service, config, history)

    controller.start_edit(reconciler.messages[0])
    controller.update_edit("changed")
    result = await controller.confirm_edit()

    assert result.status == IGNORED
    assert service.stream_calls == []
    assert not reconciler.is_loading


@pytest.mark.asyncio
async def test_cancel_edit_discards_buffer(service, config, linear_history):
    reconciler, controller = await _attached(service, config, linear_history)

    controller.start_edit(reconciler.messages[0])
    controller.update_edit("draft")
    assert controller.cancel_edit().ok

    assert controller.editing is None
    assert (await controller.confirm_edit()).status == IGNORED
    assert service.stream_calls == []


@pytest.mark.asyncio
async def test_only_human_messages_are_editable(service, config, linear_history):
    reconciler, controller = await _attached(service, config, linear_history)

    assert controller.start_edit(reconciler.messages[1]).status == REJECTED


@pytest.mark.asyncio
async def test_starting_second_edit_replaces_first(service, config):
    history = [
        state("s3", "s2", [human("h1", "one"), ai("a1", "x"), human("h2", "two")]),
        state("s2", "s1", [human("h1", "one"), ai("a1", "x")]),
        state("s1", "s0", [human("h1", "one")]),
        state("s0", None, []),
    ]
    reconciler, controller = await _attached(service, config, history)

    controller.start_edit(reconciler.messages[0])
    controller.start_edit(reconciler.messages[2])

    assert controller.editing.message_id == "h2"
    assert controller.editing.buffer == "two"


@pytest.mark.asyncio
async def test_regenerate_anchors_at_human_checkpoint(service, config, linear_history):
    reconciler, controller = await _attached(service, config, linear_history)

    result = await controller.regenerate(reconciler.messages[1])

    assert result.ok
    call = service.stream_calls[0]
    assert call["checkpoint"] == checkpoint("s1")
    assert call["input"] is None
    assert call["stream_subgraphs"] and call["stream_resumable"]


@pytest.mark.asyncio
async def test_regenerate_without_human_message_does_nothing(service, config):
    history = [state("s1", None, [ai("a0", "greetings")])]
    reconciler, controller = await _attached(service, config, history)

    result = await controller.regenerate(reconciler.messages[0])

    assert result.status == IGNORED
    assert service.stream_calls == []


@pytest.mark.asyncio
async def test_regenerate_only_last_or_answered_messages(service, config):
    history = [
        state("s3", "s2", [human("h1", "q"), ai("a1", "x"), ai("a2", "y")]),
        state("s2", "s1", [human("h1", "q"), ai("a1", "x")]),
        state("s1", "s0", [human("h1", "q")]),
        state("s0", None, []),
    ]
    reconciler, controller = await _attached(service, config, history)
    a1, a2 = reconciler.messages[1], reconciler.messages[2]

    assert not controller.can_regenerate(a1)
    assert controller.can_regenerate(a2)
    assert (await controller.regenerate(a1)).status == REJECTED
    assert not controller.toolbar_visible(a1)
    assert controller.toolbar_visible(a2)


@pytest.mark.asyncio
async def test_actions_are_gated_while_loading(service, config, linear_history):
    reconciler, controller = await _attached(service, config, linear_history)
    gate = asyncio.Event()
    service.runs.append(FakeRun(events=[gate]))

    task = asyncio.create_task(controller.send("next"))
    await service.paused.wait()
    h1, a1 = reconciler.messages[0], reconciler.messages[1]

    assert controller.start_edit(h1).status == REJECTED
    assert (await controller.regenerate(a1)).status == REJECTED
    assert not controller.toolbar_visible(h1)
    assert not controller.toolbar_visible(a1)

    gate.set()
    await task
    assert controller.toolbar_visible(h1)


@pytest.mark.asyncio
async def test_copy_text(service, config):
    history = [
        state("s3", "s2", [human("h1", " q "), ai("a1", "part one"), ai("a2", "part two")]),
        state("s2", "s1", [human("h1", " q "), ai("a1", "part one")]),
        state("s1", "s0", [human("h1", " q ")]),
        state("s0", None, []),
    ]
    reconciler, controller = await _attached(service, config, history)

    assert controller.copy_text(reconciler.messages[0]) == "q"
    assert controller.copy_text(reconciler.messages[2]) == "part one\n\npart two"


@pytest.mark.asyncio
async def test_toolbar_hidden_for_message_being_edited(service, config, linear_history):
    reconciler, controller = await _attached(service, config, linear_history)
    h1 = reconciler.messages[0]

    controller.start_edit(h1)

    assert not controller.toolbar_visible(h1)
    assert controller.is_editing(h1)
