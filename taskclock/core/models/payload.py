"""Boundary validation for the payload handed to the generation pipeline.

The scheduler itself never looks inside a payload: it is validated once, when
a task is created or edited, and stored as a plain JSON object.
"""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from typing_extensions import Self

from taskclock.core.errors import ConfigurationError, ErrorCode


class ImageAttachment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    storage_id: str
    file_name: Optional[str] = Field(default=None, alias='fileName')


class DocumentAttachment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str
    storage_id: str
    file_name: Optional[str] = Field(default=None, alias='fileName')
    file_type: Literal['pdf', 'markdown', 'text', 'epub'] = Field(alias='fileType')


class GenerateMessagePayload(BaseModel):
    """
    Parameters of one message generation request.

    Either `message` or `conversation_id` must be present: a scheduled task
    either starts from a prompt or continues an existing conversation.
    """

    # Unknown keys are dropped, not rejected
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    model_id: str = Field(min_length=1)
    message: Optional[str] = None
    assistant_id: Optional[str] = None
    project_id: Optional[str] = None
    conversation_id: Optional[str] = None
    web_search_enabled: Optional[bool] = None
    web_search_mode: Optional[Literal['off', 'standard', 'deep']] = None
    web_search_provider: Optional[
        Literal['linkup', 'tavily', 'exa', 'kagi', 'perplexity', 'valyu']
    ] = None
    web_search_exa_depth: Optional[Literal['fast', 'auto', 'neural', 'deep']] = None
    web_search_context_size: Optional[Literal['low', 'medium', 'high']] = None
    web_search_kagi_source: Optional[Literal['web', 'news', 'search']] = None
    web_search_valyu_search_type: Optional[Literal['all', 'web']] = None
    images: Optional[list[ImageAttachment]] = None
    documents: Optional[list[DocumentAttachment]] = None
    reasoning_effort: Optional[Literal['low', 'medium', 'high']] = None
    provider_id: Optional[str] = None
    image_params: Optional[dict[str, Any]] = None
    temporary: Optional[bool] = None

    @model_validator(mode='after')
    def require_message_or_conversation(self) -> Self:
        if self.message is None and self.conversation_id is None:
            raise ValueError(
                'You must provide a message or conversation_id for scheduled tasks'
            )
        return self

    def to_document(self) -> dict[str, Any]:
        """JSON object stored in the task row (unset fields dropped)."""
        return self.model_dump(mode='json', by_alias=True, exclude_none=True)


def validate_payload(raw: Any) -> dict[str, Any]:
    """Validate a raw payload and return its storable JSON form.

    Raises:
        ConfigurationError: payload does not match GenerateMessagePayload
    """
    if isinstance(raw, GenerateMessagePayload):
        return raw.to_document()
    try:
        return GenerateMessagePayload.model_validate(raw).to_document()
    except ValidationError as e:
        raise ConfigurationError(
            message='invalid scheduled task payload',
            code=ErrorCode.CONFIG_INVALID_PAYLOAD,
            notes=[
                f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
                for err in e.errors()
            ],
            help_text='payload needs model_id and either message or conversation_id',
        ) from e
