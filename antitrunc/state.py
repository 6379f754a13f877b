from __future__ import annotations

from dataclasses import dataclass

from .protocol import is_formal_response_started, is_response_complete


@dataclass
class ResponseState:
    """Thought/answer phase tracking shared by the streaming and non-streaming handlers.

    The phase only ever moves from thought to answer. Accumulated text grows
    monotonically for the lifetime of one logical response.
    """

    thought_finished: bool = False
    thought_text: str = ""
    formal_text: str = ""

    def observe(self, text: str) -> bool:
        """Return True if ``text`` is the one that ends the thought phase."""
        if not self.thought_finished and is_formal_response_started(text):
            self.thought_finished = True
            return True
        return False

    def feed(self, text: str) -> bool:
        transitioned = self.observe(text)
        if self.thought_finished:
            self.formal_text += text
        else:
            self.thought_text += text
        return transitioned

    def is_complete(self) -> bool:
        return self.thought_finished and is_response_complete(self.formal_text)
