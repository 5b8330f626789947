"""
Prompt assembly for RAG chat.

Builds the message list sent to the language model: one system message
carrying the document context, followed by the conversation so far.
"""
import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Sequence

from django.conf import settings

from apps.rag.retrieval import RetrievedSection

logger = logging.getLogger(__name__)

# Injected instead of an empty context so the model declines to answer
NO_DOCUMENTS_PLACEHOLDER = "No documents found"

CONTEXT_SEPARATOR = "\n\n"

NOT_FOUND_ANSWER = (
    "I couldn't find specific information about that in your documents. "
    "Could you try rephrasing your question or ask about something else covered in your files?"
)

VALID_ROLES = ("user", "assistant", "system")

SYSTEM_PROMPT = """You are an intelligent, helpful AI assistant specialized in answering questions about the user's documents.

## Your Behavior:
- Provide clear, well-structured, and accurate answers
- Use bullet points or numbered lists when explaining multiple items
- Be concise but thorough - include relevant details from the documents
- When quoting information, be accurate to the source material
- If a question has multiple aspects, address each one systematically

## Response Guidelines:
- Start with a direct answer when possible
- Support your answers with specific information from the documents
- Use markdown formatting for better readability (bold, lists, headers when appropriate)
- If the answer requires context, provide it briefly

## Limitations:
- Only answer based on the provided document context
- If information is not in the documents, respond with: "{not_found}"
- Never make up or assume information not present in the documents
- If the question is ambiguous, ask for clarification

## Document Context:
{context}"""


class MessageValidationError(Exception):
    """Raised when incoming chat messages are malformed."""
    pass


@dataclass(frozen=True)
class ChatMessage:
    """A message in a chat conversation."""
    role: str  # "system", "user", or "assistant"
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


def parse_messages(raw: Any) -> List[ChatMessage]:
    """
    Validate request messages into ChatMessage objects.

    Raises:
        MessageValidationError: If the payload is not a list of
            {role, content} objects with known roles
    """
    if not isinstance(raw, list):
        raise MessageValidationError("messages must be a list")

    messages = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            raise MessageValidationError(f"messages[{i}] must be an object")
        role = item.get("role")
        content = item.get("content")
        if role not in VALID_ROLES:
            raise MessageValidationError(f"messages[{i}] has invalid role: {role!r}")
        if not isinstance(content, str):
            raise MessageValidationError(f"messages[{i}].content must be a string")
        messages.append(ChatMessage(role=role, content=content))
    return messages


def build_context_block(sections: Sequence[RetrievedSection]) -> str:
    """
    Join section contents in retrieval order, separated by a blank line.

    Returns the no-documents placeholder when nothing was retrieved.
    """
    if not sections:
        return NO_DOCUMENTS_PLACEHOLDER
    return CONTEXT_SEPARATOR.join(section.content for section in sections)


def get_system_template() -> str:
    """Instruction template, overridable through the RAG_SYSTEM_PROMPT setting."""
    return getattr(settings, 'RAG_SYSTEM_PROMPT', '') or SYSTEM_PROMPT


def build_system_prompt(sections: Sequence[RetrievedSection]) -> str:
    """
    Fill the instruction template with the document context.

    Only the {not_found} and {context} placeholders are substituted; any other
    braces in an overridden template are left as written.
    """
    template = get_system_template().replace('{not_found}', NOT_FOUND_ANSWER)
    return template.replace('{context}', build_context_block(sections))


def assemble_messages(
    sections: Sequence[RetrievedSection],
    prior_messages: Iterable[ChatMessage],
) -> List[ChatMessage]:
    """
    Build the complete message list for the language model.

    The system message is always first; prior messages follow in their
    original order.
    """
    system_prompt = build_system_prompt(sections)
    logger.debug(f"System prompt length: {len(system_prompt)} chars")
    return [ChatMessage(role="system", content=system_prompt), *prior_messages]


def last_user_message(messages: Sequence[ChatMessage]) -> str:
    """Return the content of the most recent user message ('' if none)."""
    for message in reversed(messages):
        if message.role == "user":
            return message.content
    return ""
