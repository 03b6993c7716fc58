"""
Branch metadata derived from a thread's checkpoint history.

The server returns every checkpoint of a thread with a pointer to its parent.
Checkpoints sharing a parent are siblings; a parent with two or more children
is a fork, and each child below a fork opens a branch. A branch is named by
the fork choices leading to it, joined with ``>``. When a branch does not name
a choice for some fork, the newest child is followed.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from langlens.engine.messages import CheckpointRef, coerce_messages
from langlens.engine.metadata import (
    DEFAULT_BRANCH,
    CheckpointMetadata,
    CheckpointMetadataIndex,
)

ROOT_ID = "$"
PATH_SEP = ">"

#########################################################################
## History tree #########################################################
#########################################################################

def _checkpoint_id(checkpoint: Any) -> Optional[str]:
    if isinstance(checkpoint, dict):
        checkpoint_id = checkpoint.get("checkpoint_id")
        if isinstance(checkpoint_id, str) and checkpoint_id:
            return checkpoint_id
    return None


def state_messages(state: dict) -> list:
    values = state.get("values")
    if not isinstance(values, dict):
        return []
    messages = values.get("messages")
    return messages if isinstance(messages, list) else []


def _message_ids(state: dict) -> set[str]:
    ids = set()
    for msg in state_messages(state):
        msg_id = msg.get("id") if isinstance(msg, dict) else getattr(msg, "id", None)
        if msg_id is not None:
            ids.add(msg_id)
    return ids


@dataclass
class HistoryNode:
    state: dict
    checkpoint_id: str
    path: tuple[str, ...]
    children: list["HistoryNode"] = field(default_factory=list)

    @property
    def branch(self) -> str:
        return PATH_SEP.join(self.path)


@dataclass
class HistoryTree:
    roots: list[HistoryNode] = field(default_factory=list)
    nodes: dict[str, HistoryNode] = field(default_factory=dict)
    newest: Optional[HistoryNode] = None

    @property
    def latest_branch(self) -> str:
        """Branch holding the most recently written checkpoint."""
        return self.newest.branch if self.newest is not None else ""


def build_history_tree(history: Sequence[dict]) -> HistoryTree:
    """Build the checkpoint tree from history states ordered newest first."""
    tree = HistoryTree()
    states = [state for state in reversed(history) if _checkpoint_id(state.get("checkpoint"))]
    known = {_checkpoint_id(state.get("checkpoint")) for state in states}

    children_of: dict[str, list[dict]] = {}
    for state in states:
        parent_id = _checkpoint_id(state.get("parent_checkpoint"))
        if parent_id is None or parent_id not in known:
            parent_id = ROOT_ID
        children_of.setdefault(parent_id, []).append(state)

    # Breadth-first so every parent has its path before its children.
    queue: list[tuple[str, tuple[str, ...], Optional[HistoryNode]]] = [(ROOT_ID, (), None)]
    while queue:
        parent_id, parent_path, parent_node = queue.pop(0)
        kids = children_of.get(parent_id, [])
        is_fork = len(kids) > 1
        for state in kids:
            checkpoint_id = _checkpoint_id(state.get("checkpoint"))
            if checkpoint_id in tree.nodes:
                continue
            path = parent_path + (checkpoint_id,) if is_fork else parent_path
            node = HistoryNode(state=state, checkpoint_id=checkpoint_id, path=path)
            tree.nodes[checkpoint_id] = node
            if parent_node is None:
                tree.roots.append(node)
            else:
                parent_node.children.append(node)
            queue.append((checkpoint_id, path, node))

    if history:
        tree.newest = tree.nodes.get(_checkpoint_id(history[0].get("checkpoint")))
    return tree

#########################################################################
## Branch views #########################################################
#########################################################################

@dataclass
class BranchView:
    """The linear history along one branch plus per-checkpoint branch info."""

    states: list[dict] = field(default_factory=list)
    branch_by_checkpoint: dict[str, tuple[str, tuple[str, ...]]] = field(default_factory=dict)

    @property
    def head(self) -> Optional[dict]:
        return self.states[-1] if self.states else None

    @property
    def head_messages(self) -> list:
        return state_messages(self.head) if self.head is not None else []


def branch_view(tree: HistoryTree, branch: str) -> BranchView:
    """Walk the tree from the root, taking the branch's choice at each fork."""
    choices = [choice for choice in (branch or "").split(PATH_SEP) if choice]
    if branch == DEFAULT_BRANCH:
        choices = []
    view = BranchView()
    options: tuple[str, ...] = ()
    siblings = tree.roots
    while siblings:
        if len(siblings) == 1:
            node = siblings[0]
        else:
            wanted = choices.pop(0) if choices else None
            node = next(
                (sibling for sibling in siblings if sibling.checkpoint_id == wanted),
                siblings[-1],
            )
            options = tuple(sibling.branch for sibling in siblings)
        view.states.append(node.state)
        view.branch_by_checkpoint[node.checkpoint_id] = (node.branch, options)
        siblings = node.children
    return view


def build_metadata_index(view: BranchView, messages: Sequence[Any]) -> CheckpointMetadataIndex:
    """
    Attach checkpoint metadata to every message on the view.

    A message's checkpoint is the first state on the branch that contains it.
    Fork options are reported only on the first message below the fork.
    """
    state_ids = [(state, _message_ids(state)) for state in view.states]
    shown_options: set[tuple[str, ...]] = set()
    entries: dict[str, CheckpointMetadata] = {}
    for msg in coerce_messages(messages):
        if msg.id is None:
            continue
        first_seen = next((state for state, ids in state_ids if msg.id in ids), None)
        if first_seen is None:
            continue
        checkpoint_id = _checkpoint_id(first_seen.get("checkpoint"))
        branch, options = view.branch_by_checkpoint.get(checkpoint_id, ("", ()))
        if options:
            if options in shown_options:
                branch, options = "", ()
            else:
                shown_options.add(options)
        entries[msg.id] = CheckpointMetadata(
            checkpoint=CheckpointRef.from_payload(first_seen.get("checkpoint")),
            parent_checkpoint=CheckpointRef.from_payload(first_seen.get("parent_checkpoint")),
            branch=branch or DEFAULT_BRANCH,
            branch_options=options,
        )
    return CheckpointMetadataIndex(entries)
