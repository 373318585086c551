import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backstage.corpus import AssembledContext, DocumentCorpus, assemble_context
from backstage.errors import ModelProviderError, RequestInvalid
from backstage.models import ChatMessage
from backstage.schemas import ChunkEvent, DoneEvent, UserMessageEvent

logger = logging.getLogger("backstage.chat")

SYSTEM_INSTRUCTION = """Role: You are "Backstage Brain", the official production assistant for this event.
Mission: Answer the user's questions using ONLY the supplied context.

Strict rules:
1. Your source of truth is the text labelled "EVENT CONTEXT". Do not use outside knowledge.
2. If the answer is not in the context, reply politely that you can only answer questions about the official information for this event.
3. Be concise and helpful, with a professional but friendly tone.
4. If asked about topics unrelated to the event, remind the user what you are for.
5. Do not introduce yourself or greet. Go straight to the answer.
"""

NO_DOCUMENTS_REPLY = (
    "There are no documents available for this event yet. "
    "Please upload some files first and I'll answer from them."
)


def build_prompt(context: str, question: str) -> str:
    return f"""EVENT CONTEXT:
{context}

USER QUESTION:
{question}
"""


def serialize_message(m: ChatMessage) -> dict:
    return {
        "id": m.id,
        "user_id": m.user_id,
        "event_id": m.event_id,
        "role": m.role,
        "content": m.content,
        "source_file_id": m.source_file_id,
        "source_document_name": m.source_document_name,
        "created_at": m.created_at.isoformat() if m.created_at else None,
    }


class ConversationStore:
    def __init__(self, db: Session):
        self.db = db

    def append(
        self,
        user_id: int,
        event_id: str,
        role: str,
        content: str,
        source_file_id: Optional[str] = None,
        source_document_name: Optional[str] = None,
    ) -> Optional[ChatMessage]:
        """Persist one message. Returns None (and logs) when the write fails."""
        msg = ChatMessage(
            user_id=user_id,
            event_id=event_id,
            role=role,
            content=content,
            source_file_id=source_file_id,
            source_document_name=source_document_name,
        )
        try:
            self.db.add(msg)
            self.db.commit()
            self.db.refresh(msg)
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(
                "Failed to persist %s message for user %s on event %s", role, user_id, event_id
            )
            return None
        return msg

    def list_for_user(self, user_id: int, event_id: str) -> List[ChatMessage]:
        return (
            self.db.query(ChatMessage)
            .filter(ChatMessage.user_id == user_id, ChatMessage.event_id == event_id)
            .order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())
            .all()
        )


@dataclass
class ChatTurn:
    user_id: int
    event_id: str
    question: str
    context: AssembledContext
    user_message: Optional[ChatMessage]

    @property
    def source_id(self) -> Optional[str]:
        doc = self.context.first_document
        return doc.id if doc else None

    @property
    def source_name(self) -> Optional[str]:
        doc = self.context.first_document
        return doc.name if doc else None


@dataclass
class ChatResult:
    text: str
    grounding_document_name: Optional[str]
    user_message: Optional[ChatMessage]
    assistant_message: Optional[ChatMessage]

    def to_response(self) -> dict:
        return {
            "userMessage": serialize_message(self.user_message) if self.user_message else None,
            "assistantMessage": serialize_message(self.assistant_message) if self.assistant_message else None,
            "response": self.text,
        }


class ChatEngine:
    """
    Answers a question about one event from its document corpus.

    Each turn stores the user message before the model is called and the
    assistant message after it answers. Both carry the first corpus document
    as their provenance tag.
    """

    def __init__(self, llm, corpus: DocumentCorpus, conversations: ConversationStore):
        self.llm = llm
        self.corpus = corpus
        self.conversations = conversations

    def _begin(self, user_id: int, event_id: str, question: str) -> ChatTurn:
        question = (question or "").strip()
        if not question:
            raise RequestInvalid("Message is required")

        context = assemble_context(self.corpus.read(event_id))
        turn = ChatTurn(user_id, event_id, question, context, None)
        turn.user_message = self.conversations.append(
            user_id, event_id, "user", question, turn.source_id, turn.source_name
        )
        return turn

    def _finish(self, turn: ChatTurn, text: str) -> ChatResult:
        assistant = self.conversations.append(
            turn.user_id, turn.event_id, "assistant", text, turn.source_id, turn.source_name
        )
        return ChatResult(text, turn.source_name, turn.user_message, assistant)

    def answer(self, user_id: int, event_id: str, question: str) -> ChatResult:
        turn = self._begin(user_id, event_id, question)
        if turn.context.is_empty:
            return self._finish(turn, NO_DOCUMENTS_REPLY)

        text = self.llm.generate(SYSTEM_INSTRUCTION, build_prompt(turn.context.text, turn.question))
        return self._finish(turn, text)

    def answer_stream(self, user_id: int, event_id: str, question: str) -> Iterator:
        """
        Validation, corpus loading, the user-message write and opening the
        model stream all happen before this returns, so their failures reach
        the caller as ordinary errors. The returned iterator yields
        user_message, chunk..., done.
        """
        turn = self._begin(user_id, event_id, question)
        if turn.context.is_empty:
            pieces = iter([NO_DOCUMENTS_REPLY])
        else:
            pieces = self.llm.stream(SYSTEM_INSTRUCTION, build_prompt(turn.context.text, turn.question))
        return self._events(turn, pieces)

    def _events(self, turn: ChatTurn, pieces: Iterator[str]):
        user_message = serialize_message(turn.user_message) if turn.user_message else None
        yield UserMessageEvent(message=user_message)

        collected = []
        try:
            for piece in pieces:
                collected.append(piece)
                yield ChunkEvent(content=piece)
        except ModelProviderError:
            # Headers are already sent; end the stream without a done event.
            logger.error(
                "Stream for user %s on event %s ended early after %d chunks",
                turn.user_id, turn.event_id, len(collected),
            )
            return

        result = self._finish(turn, "".join(collected).strip())
        assistant = serialize_message(result.assistant_message) if result.assistant_message else None
        yield DoneEvent(message=assistant, content=result.text)
