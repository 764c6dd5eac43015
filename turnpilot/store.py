import logging
from typing import Any, Callable, Dict, List, Optional

from .db import Database
from .schemas import Conversation, Message, Summary

logger = logging.getLogger("uvicorn.error")

Listener = Callable[[str, str, dict], None]
Predicate = Callable[[Message], bool]
Updater = Callable[[Message], Message]


def message_payload(message: Message) -> dict:
    return message.model_dump(mode="json", exclude_none=True)


def conversation_payload(conversation: Conversation, include_messages: bool = False) -> dict:
    exclude = None if include_messages else {"messages", "summaries"}
    data = conversation.model_dump(mode="json", exclude=exclude)
    if include_messages:
        data["messages"] = [message_payload(m) for m in conversation.messages]
    else:
        data["message_count"] = len(conversation.messages)
    return data


class ConversationStore:
    """Ordered message logs keyed by conversation id.

    Messages are only ever appended, truncated, or replaced by id/predicate so that concurrent writers
    never address a message by position.
    """

    def __init__(self, db: Optional[Database] = None):
        self.db = db
        self.conversations: Dict[str, Conversation] = {}
        self.listeners: List[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        self.listeners.append(listener)

    def _notify(self, conversation_id: str, event_type: str, payload: dict) -> None:
        for listener in list(self.listeners):
            listener(conversation_id, event_type, payload)

    async def load(self) -> None:
        if self.db is None:
            return
        for conversation in await self.db.load_conversations():
            self.conversations[conversation.id] = conversation

    async def flush(self, conversation_id: str) -> None:
        conversation = self.conversations.get(conversation_id)
        if self.db is None or conversation is None:
            return
        await self.db.save_conversation(conversation)

    def create(self, title: Optional[str] = None) -> Conversation:
        conversation = Conversation(title=title or "New Chat")
        self.conversations[conversation.id] = conversation
        self._notify(conversation.id, "conversation_created", {"conversation": conversation_payload(conversation)})
        return conversation

    def get(self, conversation_id: str) -> Optional[Conversation]:
        return self.conversations.get(conversation_id)

    def require(self, conversation_id: str) -> Conversation:
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            raise KeyError(conversation_id)
        return conversation

    def list_conversations(self) -> List[Conversation]:
        ordered = sorted(self.conversations.values(), key=lambda c: c.created_at, reverse=True)
        return sorted(ordered, key=lambda c: not c.is_pinned)

    async def delete(self, conversation_id: str) -> bool:
        if self.conversations.pop(conversation_id, None) is None:
            return False
        if self.db is not None:
            await self.db.delete_conversation(conversation_id)
        self._notify(conversation_id, "conversation_deleted", {})
        return True

    def messages(self, conversation_id: str) -> List[Message]:
        return list(self.require(conversation_id).messages)

    def find_message(self, conversation_id: str, message_id: str) -> Optional[Message]:
        for message in self.require(conversation_id).messages:
            if message.id == message_id:
                return message
        return None

    def append_message(self, conversation_id: str, message: Message) -> Message:
        conversation = self.require(conversation_id)
        conversation.messages.append(message)
        self._notify(conversation_id, "message_added", {"message": message_payload(message)})
        return message

    def update_messages(self, conversation_id: str, predicate: Predicate, updater: Updater) -> int:
        conversation = self.require(conversation_id)
        changed: List[Message] = []
        updated: List[Message] = []
        for message in conversation.messages:
            if predicate(message):
                new_message = updater(message)
                updated.append(new_message)
                if new_message != message:
                    changed.append(new_message)
            else:
                updated.append(message)
        conversation.messages = updated
        for message in changed:
            self._notify(conversation_id, "message_updated", {"message": message_payload(message)})
        return len(changed)

    def update_message(self, conversation_id: str, message_id: str, **fields: Any) -> Optional[Message]:
        self.update_messages(
            conversation_id,
            lambda m: m.id == message_id,
            lambda m: m.model_copy(update=fields),
        )
        return self.find_message(conversation_id, message_id)

    def truncate(self, conversation_id: str, length: int) -> List[Message]:
        conversation = self.require(conversation_id)
        removed = conversation.messages[length:]
        conversation.messages = conversation.messages[:length]
        if removed:
            self._notify(conversation_id, "messages_truncated", {"removed_ids": [m.id for m in removed]})
        return removed

    def update_conversation(self, conversation_id: str, **fields: Any) -> Conversation:
        conversation = self.require(conversation_id)
        for key, value in fields.items():
            setattr(conversation, key, value)
        self._notify(conversation_id, "conversation_updated", {"conversation": conversation_payload(conversation)})
        return conversation

    def append_summaries(self, conversation_id: str, summaries: List[Summary]) -> None:
        conversation = self.require(conversation_id)
        conversation.summaries = [*conversation.summaries, *summaries]
        self._notify(conversation_id, "summaries_added", {"count": len(summaries)})
