"""Conversation sessions for multi-turn prompting."""
import uuid
from dataclasses import dataclass, field
from typing import Optional

from pdfrag import config

USER_PREFIX = "Prompter:"
ASSISTANT_PREFIX = "\nAI:"


@dataclass
class Session:
    """One conversation with a model.

    ``history`` holds every prompt and response in display order and is the
    full prompt sent to the backend. It is only ever appended to; resetting
    or switching models produces a new Session.
    """

    model: str = field(default_factory=lambda: config.CHAT_MODEL)
    history: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def add_prompt(self, text: str) -> str:
        """Append a user turn and return the prompt to transmit."""
        self.history += f"{USER_PREFIX}{text}{ASSISTANT_PREFIX}"
        return self.history

    def add_response(self, fragment: str) -> None:
        self.history += fragment

    def end_turn(self) -> None:
        self.history += "\n"

    def reset(self) -> "Session":
        """Fresh session for the same model."""
        return Session(model=self.model)

    def switch_model(self, model: Optional[str]) -> "Session":
        """Session for ``model``; unchanged if it is already the active model."""
        if not model or model == self.model:
            return self
        return Session(model=model)
