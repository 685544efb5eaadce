# core/greeting.py
"""
Onboarding flow for empty chats: a greeting, a set of candidate options, and
canned replies that lead to further options from the OptionGraph. Demo options
are handed back to the caller so it can start a real analysis.
"""
import asyncio
from dataclasses import dataclass
from typing import Callable, Optional, Set

from core.conversation import ConversationMessage, MessageType, assistant_message, user_message
from core.errors import ValidationError
from core.option_graph import GREETING_MESSAGES, OptionGraph, OptionNode, default_option_graph
from core.session_guard import SessionGuard
from utils.logging_utils import get_logger

logger = get_logger("greeting")

OPTIONS_DELAY_S = 0.2


@dataclass
class GreetingChoice:
    option: OptionNode
    reply_id: Optional[str] = None
    options_message_id: Optional[str] = None

    @property
    def starts_analysis(self) -> bool:
        return self.option.is_demo


class GreetingFlow:
    def __init__(
        self,
        guard: SessionGuard,
        is_busy: Callable[[str], bool],
        graph: Optional[OptionGraph] = None,
    ):
        self.guard = guard
        self.is_busy = is_busy
        self.graph = graph or default_option_graph()
        self._greeted: Set[str] = set()

    def _options_message(self, option_ids, is_greeting: bool = False) -> ConversationMessage:
        # Empty content: the message only carries the option ids
        return assistant_message(
            message_type=MessageType.CANDIDATE_RESPONSES,
            candidate_options=list(option_ids),
            is_greeting=is_greeting,
        )

    async def maybe_greet(self, session_id: str) -> Optional[ConversationMessage]:
        """Greet an empty, idle chat once. Returns the options message."""
        if session_id in self._greeted or self.is_busy(session_id):
            return None
        writer = self.guard.guard(session_id)
        if not writer.active or await writer.load_history():
            return None
        self._greeted.add(session_id)

        intro = assistant_message(streaming=True, is_greeting=True)
        await writer.append(intro)
        if not await writer.reveal(intro.id, GREETING_MESSAGES["greeting"]):
            return None

        await asyncio.sleep(OPTIONS_DELAY_S)
        options = self._options_message(self.graph.root_ids(), is_greeting=True)
        if not await writer.append(options):
            return None
        logger.debug(f"[GREETING] Greeted {session_id}")
        return options

    async def choose(self, session_id: str, message_id: str, option_id: str) -> GreetingChoice:
        """Record a choice on an options message and play the canned reply."""
        writer = self.guard.guard(session_id)
        message = await writer.get(message_id)
        if message is None or message.message_type is not MessageType.CANDIDATE_RESPONSES:
            raise ValidationError(f"Message {message_id} does not offer options")
        if option_id not in message.candidate_options:
            raise ValidationError(f"Option {option_id} is not offered by message {message_id}")
        if message.candidate_selected is not None:
            raise ValidationError(f"Message {message_id} already answered with {message.candidate_selected}")

        option = self.graph.node(option_id)
        await writer.update(message_id, candidate_selected=option_id)
        logger.info(f"[GREETING] {session_id} chose {option_id}")

        if option.is_demo:
            # The caller submits option.text with the demo video
            return GreetingChoice(option)

        await writer.append(user_message(option.text))
        reply = assistant_message(streaming=True)
        await writer.append(reply)
        await writer.reveal(reply.id, option.response)

        choice = GreetingChoice(option, reply_id=reply.id)
        if option.children:
            await asyncio.sleep(OPTIONS_DELAY_S)
            follow_up = self._options_message(option.children)
            if await writer.append(follow_up):
                choice.options_message_id = follow_up.id
        return choice
