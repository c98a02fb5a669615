import inspect
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from loguru import logger
from pydantic import BaseModel, Field

from agentbridge.intents import FileOperationKind

INTENT_APPROVED = "intent-approved"


class BridgeEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    actor: str
    payload: Dict[str, Any]


class IntentApproved(BaseModel):
    """Payload of an intent-approved event: one file mutation to perform."""
    intent_id: str
    operation: FileOperationKind = "create"
    target_path: Optional[str] = None
    content: Optional[str] = None
    new_path: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    user_id: Optional[str] = None
    session_id: str


Subscriber = Callable[[BridgeEvent], Union[None, Awaitable[None]]]


class EventBus:
    """In-process event bus between the AgentBridge and its consumers.

    Delivery is at-most-once and not durable: subscribers registered after
    an emit, or restarted, do not see earlier events.
    """

    def __init__(self):
        self._subscribers: List[Tuple[Optional[str], Subscriber]] = []

    def subscribe(self, callback: Subscriber, event_type: Optional[str] = None) -> None:
        """Register a callback, optionally for a single event type. Async callbacks are awaited."""
        self._subscribers.append((event_type, callback))

    def unsubscribe(self, callback: Subscriber) -> None:
        self._subscribers = [(t, cb) for t, cb in self._subscribers if cb != callback]

    async def emit(self, event_type: str, actor: str, payload: Dict[str, Any]) -> BridgeEvent:
        """Construct a BridgeEvent and deliver it to every matching subscriber."""
        event = BridgeEvent(
            event_type=event_type,
            actor=actor,
            payload=payload
        )

        for wanted, subscriber in list(self._subscribers):
            if wanted is not None and wanted != event_type:
                continue
            try:
                result = subscriber(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                # A failing subscriber must not break the pipeline or its siblings
                logger.warning(f"[BUS] Subscriber failed on {event_type}: {e}")

        return event
