"""Message models: token accounting, errors, user and assistant messages."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter

# -- Usage -------------------------------------------------------------------


class CacheTokens(BaseModel):
    read: int = 0
    write: int = 0


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0
    reasoning: int = 0
    cache: CacheTokens = Field(default_factory=CacheTokens)

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input=self.input + other.input,
            output=self.output + other.output,
            reasoning=self.reasoning + other.reasoning,
            cache=CacheTokens(
                read=self.cache.read + other.cache.read,
                write=self.cache.write + other.cache.write,
            ),
        )


# -- Errors ------------------------------------------------------------------


class MessageError(BaseModel):
    """Serializable form of a provider failure attached to an assistant message."""

    name: str
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def message(self) -> str:
        return str(self.data.get("message", ""))


# -- Messages ----------------------------------------------------------------


class MessageTime(BaseModel):
    created: int
    completed: int | None = None


class UserMessage(BaseModel):
    role: Literal["user"] = "user"
    id: str
    session_id: str
    time: MessageTime


class AssistantMessage(BaseModel):
    """Assistant message mutated by the stream processor.

    ``cost`` and ``tokens`` only grow, one completed step at a time.  Once
    ``time.completed`` is set the processor leaves the message alone.
    """

    role: Literal["assistant"] = "assistant"
    id: str
    session_id: str
    parent_id: str | None = None
    provider_id: str = ""
    model_id: str = ""
    cost: float = Field(default=0.0, ge=0)
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    finish: str | None = None
    error: MessageError | None = None
    time: MessageTime

    @property
    def completed(self) -> bool:
        return self.time.completed is not None


Message = Annotated[UserMessage | AssistantMessage, Field(discriminator="role")]

MessageAdapter: TypeAdapter[UserMessage | AssistantMessage] = TypeAdapter(Message)
