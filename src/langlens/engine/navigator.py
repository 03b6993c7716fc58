import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from langchain_core.messages import BaseMessage

from langlens.engine.errors import ActionResult
from langlens.engine.metadata import CheckpointMetadata
from langlens.engine.reconciler import HistoryReconciler

logger = logging.getLogger(__name__)

NEXT = "next"
PREVIOUS = "previous"
DIRECTIONS = (NEXT, PREVIOUS)

#########################################################################
## Branch cycling #######################################################
#########################################################################

@dataclass(frozen=True)
class BranchPosition:
    index: int
    options: tuple[str, ...]

    @property
    def total(self) -> int:
        return len(self.options)

    @property
    def label(self) -> str:
        return f"{self.index + 1} of {self.total}"


def cycle_branch(options: Sequence[str], current: str, direction: str) -> str:
    """Neighbour of `current` in `options`, wrapping at both ends."""
    total = len(options)
    idx = list(options).index(current) if current in options else 0
    if direction == NEXT:
        return options[(idx + 1) % total]
    return options[(idx - 1 + total) % total]


def branch_position(metadata: Optional[CheckpointMetadata]) -> Optional[BranchPosition]:
    """Position among sibling branches, or None when there is nothing to switch."""
    if metadata is None or not metadata.has_alternatives:
        return None
    options = metadata.branch_options
    return BranchPosition(index=options.index(metadata.branch), options=options)

#########################################################################
## Navigator ############################################################
#########################################################################

class BranchNavigator:
    """Cycles a message between its sibling branches."""

    def __init__(self, reconciler: HistoryReconciler):
        self.reconciler = reconciler

    def position(self, message: BaseMessage) -> Optional[BranchPosition]:
        return branch_position(self.reconciler.thread.metadata_of(message))

    def branch_label(self, message: BaseMessage) -> Optional[str]:
        position = self.position(message)
        return position.label if position is not None else None

    def target_branch(self, message: BaseMessage, direction: str) -> Optional[str]:
        metadata = self.reconciler.thread.metadata_of(message)
        if direction not in DIRECTIONS or branch_position(metadata) is None:
            return None
        return cycle_branch(metadata.branch_options, metadata.branch, direction)

    async def switch_branch(self, message: BaseMessage, direction: str) -> ActionResult:
        if direction not in DIRECTIONS:
            return ActionResult.rejected(f"Unknown direction: {direction!r}")
        target = self.target_branch(message, direction)
        if target is None:
            return ActionResult.ignored("Message has no sibling branches")
        logger.debug("Switching message %s to branch %s", message.id, target)
        return await self.reconciler.set_branch(target)
