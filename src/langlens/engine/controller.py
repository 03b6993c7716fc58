import logging
from dataclasses import dataclass
from typing import Optional

from langchain_core.messages import BaseMessage

from langlens.engine.errors import ActionResult
from langlens.engine.messages import (
    extract_ai_message_content,
    find_previous_human_message_index,
    human_text_message,
    is_assistant,
    is_human,
    rendered_text,
)
from langlens.engine.reconciler import HistoryReconciler

logger = logging.getLogger(__name__)

#########################################################################
## Edit sessions ########################################################
#########################################################################

@dataclass
class EditSession:
    message_id: str
    buffer: str

#########################################################################
## Edit / regenerate controller #########################################
#########################################################################

class ThreadController:
    """
    User actions on individual messages: edit, regenerate, copy.

    Edits and regenerations fork the conversation at a checkpoint and are
    submitted through the reconciler, which owns loading state.
    """

    def __init__(self, reconciler: HistoryReconciler):
        self.reconciler = reconciler
        self._session: Optional[EditSession] = None

    @property
    def editing(self) -> Optional[EditSession]:
        return self._session

    def is_editing(self, message: BaseMessage) -> bool:
        return self._session is not None and self._session.message_id == message.id

    ## Edit #############################################################

    def start_edit(self, message: BaseMessage) -> ActionResult:
        """Open an edit buffer seeded with the message's text."""
        if self.reconciler.is_loading:
            return ActionResult.rejected("A run is in progress")
        if not is_human(message):
            return ActionResult.rejected("Only human messages can be edited")
        if message.id is None:
            return ActionResult.rejected("Message has no id")
        if self._session is not None and self._session.message_id != message.id:
            logger.debug("Discarding edit of message %s", self._session.message_id)
        self._session = EditSession(message_id=message.id, buffer=rendered_text(message))
        return ActionResult.success()

    def update_edit(self, text: str) -> ActionResult:
        if self._session is None:
            return ActionResult.ignored("No edit in progress")
        self._session.buffer = text
        return ActionResult.success()

    def cancel_edit(self) -> ActionResult:
        if self._session is None:
            return ActionResult.ignored("No edit in progress")
        self._session = None
        return ActionResult.success()

    async def confirm_edit(self) -> ActionResult:
        """Submit the edited text as a new human message forked at the parent checkpoint."""
        session = self._session
        if session is None:
            return ActionResult.ignored("No edit in progress")
        if self.reconciler.is_loading:
            return ActionResult.rejected("A run is in progress")

        thread = self.reconciler.thread
        message = thread.get_message(session.message_id)
        metadata = thread.metadata_of(message) if message is not None else None
        if metadata is None or metadata.parent_checkpoint is None:
            logger.info("Edit of message %s ignored: no parent checkpoint", session.message_id)
            return ActionResult.ignored("Message has no parent checkpoint")

        self._session = None
        return await self.reconciler.submit(
            [human_text_message(session.buffer)],
            checkpoint=metadata.parent_checkpoint,
        )

    ## Regenerate #######################################################

    def can_regenerate(self, message: BaseMessage) -> bool:
        """Only the last message, or an assistant message answered by a human, regenerates."""
        if not is_assistant(message):
            return False
        messages = self.reconciler.messages
        idx = self.reconciler.thread.index_of(message)
        if idx == -1:
            return False
        if idx == len(messages) - 1:
            return True
        return is_human(messages[idx + 1])

    async def regenerate(self, message: BaseMessage) -> ActionResult:
        """Re-run the turn that produced `message` from its human message's checkpoint."""
        if self.reconciler.is_loading:
            return ActionResult.rejected("A run is in progress")
        if not self.can_regenerate(message):
            return ActionResult.rejected("Message cannot be regenerated")

        thread = self.reconciler.thread
        human_index = find_previous_human_message_index(message, thread.messages)
        if human_index == -1:
            logger.info("Regenerate of message %s ignored: no preceding human message", message.id)
            return ActionResult.ignored("No preceding human message")
        metadata = thread.metadata_of(thread.messages[human_index])
        if metadata is None or metadata.checkpoint is None:
            logger.info("Regenerate of message %s ignored: no checkpoint", message.id)
            return ActionResult.ignored("Human message has no checkpoint")

        self._session = None
        return await self.reconciler.submit(None, checkpoint=metadata.checkpoint)

    ## Messages and toolbars ############################################

    async def send(self, text: str) -> ActionResult:
        """Append a new human message to the active branch."""
        if not text.strip():
            return ActionResult.ignored("Empty message")
        return await self.reconciler.submit([human_text_message(text)])

    def toolbar_visible(self, message: BaseMessage) -> bool:
        if self.reconciler.is_loading or self.is_editing(message):
            return False
        if is_human(message):
            return True
        return self.can_regenerate(message)

    def copy_text(self, message: BaseMessage) -> str:
        if is_assistant(message):
            return extract_ai_message_content(message, self.reconciler.messages)
        return rendered_text(message)
