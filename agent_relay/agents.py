"""Reference agent handlers.

EchoAgent answers every prompt by streaming it back word by word. It is
what ``agent-relay echo-agent`` connects, and what the tests drive.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from . import protocol

logger = logging.getLogger(__name__)


class EchoAgent:
    """Streams the prompt back one word per ``content`` message.

    Prompts are kept on an undo stack so undo()/redo() have something to
    move around.
    """

    def __init__(self, agent_id: str = "echo", delay: float = 0.0):
        self.agent_id = agent_id
        self.delay = delay
        self.history: List[str] = []
        self.undone: List[str] = []

    async def run(self, prompt: str,
                  context: Optional[Dict[str, Any]] = None) -> AsyncIterator[protocol.AgentMessage]:
        self.history.append(prompt)
        self.undone.clear()

        if context:
            yield protocol.AgentMessage(type="status", content="context received",
                                        extra={"keys": sorted(context)})

        for word in prompt.split():
            if self.delay:
                await asyncio.sleep(self.delay)
            yield protocol.content_message(word)

        yield protocol.done_message()

    async def undo(self):
        if not self.history:
            raise RuntimeError("Nothing to undo")
        self.undone.append(self.history.pop())
        logger.info(f"{self.agent_id}: undid {self.undone[-1]!r}")

    async def redo(self):
        if not self.undone:
            raise RuntimeError("Nothing to redo")
        self.history.append(self.undone.pop())
        logger.info(f"{self.agent_id}: redid {self.history[-1]!r}")
