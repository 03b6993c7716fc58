from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

from langchain_core.messages import BaseMessage

from langlens.engine.messages import CheckpointRef

#########################################################################
## Checkpoint metadata ##################################################
#########################################################################

DEFAULT_BRANCH = "main"


@dataclass(frozen=True)
class CheckpointMetadata:
    """Where a message entered the checkpoint graph and which branch it is on."""

    checkpoint: Optional[CheckpointRef]
    parent_checkpoint: Optional[CheckpointRef] = None
    branch: str = DEFAULT_BRANCH
    branch_options: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        branch = self.branch or DEFAULT_BRANCH
        options = tuple(self.branch_options)
        if branch not in options:
            options = (branch,) if not options else options + (branch,)
        object.__setattr__(self, "branch", branch)
        object.__setattr__(self, "branch_options", options)

    @property
    def has_alternatives(self) -> bool:
        return len(self.branch_options) > 1


@dataclass(frozen=True)
class CheckpointMetadataIndex:
    """
    Read-only mapping from message id to the metadata the service supplied.

    A new index is built whenever history is refreshed; entries are never
    patched in place.
    """

    entries: Mapping[str, CheckpointMetadata] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "entries", MappingProxyType(dict(self.entries)))

    def metadata_of(self, message: BaseMessage) -> Optional[CheckpointMetadata]:
        if message.id is None:
            return None
        return self.entries.get(message.id)

    def __len__(self) -> int:
        return len(self.entries)


EMPTY_INDEX = CheckpointMetadataIndex()
