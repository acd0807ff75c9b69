"""Out-of-band user messages injected into a running tool session."""

from collections import deque
from typing import List, Union

from agent.chat_types import ChatMessage


class SteeringQueue:
    """FIFO of messages the user typed while the model was still working.

    The inference loop drains it at the top of every round, so a human can
    redirect a multi-round tool session without restarting it.
    """

    def __init__(self):
        self._pending = deque()

    def push(self, message: Union[str, ChatMessage]) -> None:
        if isinstance(message, str):
            text = message.strip()
            if not text:
                return
            message = ChatMessage(role="user", text=text)
        self._pending.append(message)

    def drain(self) -> List[ChatMessage]:
        drained = list(self._pending)
        self._pending.clear()
        return drained

    def __len__(self) -> int:
        return len(self._pending)
