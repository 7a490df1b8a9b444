"""Pydantic models for the typed Langfuse attribute bags.

Observation attributes are a tagged union over the three observation kinds
(`span`, `generation`, `event`), discriminated by the literal `type` field.
Each variant lists its optional fields explicitly so the serialization rules
in `langfuse_pipeline.attributes` cover every field of every kind.
`TraceAttributes` holds the trace-level fields, a subset of which is eligible
for cross-scope propagation.
"""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

ObservationLevel = Literal["DEBUG", "DEFAULT", "WARNING", "ERROR"]
ObservationType = Literal["span", "generation", "event"]


class PromptReference(BaseModel):
    """Link from a generation to the managed prompt that produced it.

    Fallback prompts (local defaults used when the prompt could not be
    fetched) are never linked.
    """

    model_config = ConfigDict(populate_by_name=True)

    name: str
    version: int
    is_fallback: bool = Field(default=False, alias="isFallback")


class BaseObservationAttributes(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True, arbitrary_types_allowed=True, protected_namespaces=()
    )

    input: Optional[Any] = None
    output: Optional[Any] = None
    metadata: Optional[Any] = None
    level: Optional[ObservationLevel] = None
    status_message: Optional[str] = Field(default=None, alias="statusMessage")
    version: Optional[str] = None


class SpanAttributes(BaseObservationAttributes):
    type: Literal["span"] = "span"


class EventAttributes(BaseObservationAttributes):
    type: Literal["event"] = "event"


class GenerationAttributes(BaseObservationAttributes):
    """Attributes of a model inference call."""

    type: Literal["generation"] = "generation"
    model: Optional[str] = None
    model_parameters: Optional[Dict[str, Any]] = Field(default=None, alias="modelParameters")
    usage_details: Optional[Dict[str, Any]] = Field(default=None, alias="usageDetails")
    cost_details: Optional[Dict[str, float]] = Field(default=None, alias="costDetails")
    completion_start_time: Optional[datetime] = Field(default=None, alias="completionStartTime")
    prompt: Optional[PromptReference] = None


ObservationAttributes = Annotated[
    Union[SpanAttributes, GenerationAttributes, EventAttributes],
    Field(discriminator="type"),
]

OBSERVATION_ATTRIBUTE_MODELS: Dict[str, type[BaseObservationAttributes]] = {
    "span": SpanAttributes,
    "generation": GenerationAttributes,
    "event": EventAttributes,
}


class TraceAttributes(BaseModel):
    """Trace-level attributes.

    `user_id`, `session_id`, `version`, `tags` and `metadata` are the fields
    `propagate_attributes` can carry to descendant observations.
    """

    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    user_id: Optional[str] = Field(default=None, alias="userId")
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    version: Optional[str] = None
    release: Optional[str] = None
    input: Optional[Any] = None
    output: Optional[Any] = None
    tags: Optional[List[str]] = None
    metadata: Optional[Any] = None
    public: Optional[bool] = None
    environment: Optional[str] = None

    @field_validator("tags")
    @classmethod
    def _dedupe_tags(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        # Semantically a set; keep first-seen order for export.
        return list(dict.fromkeys(value))


def coerce_observation_attributes(
    kind: ObservationType, attributes: Union[BaseObservationAttributes, Dict[str, Any], None]
) -> BaseObservationAttributes:
    """Return `attributes` as the model matching `kind`.

    Accepts an already-built model of the right kind, a plain mapping (snake
    or camel case keys) or None.
    """
    model_cls = OBSERVATION_ATTRIBUTE_MODELS[kind]
    if attributes is None:
        return model_cls()
    if isinstance(attributes, model_cls):
        return attributes
    if isinstance(attributes, BaseObservationAttributes):
        data = attributes.model_dump(exclude_unset=True, exclude={"type"})
        return model_cls.model_validate(data)
    data = {k: v for k, v in dict(attributes).items() if k != "type"}
    return model_cls.model_validate(data)


def coerce_trace_attributes(attributes: Union[TraceAttributes, Dict[str, Any], None]) -> TraceAttributes:
    if attributes is None:
        return TraceAttributes()
    if isinstance(attributes, TraceAttributes):
        return attributes
    return TraceAttributes.model_validate(dict(attributes))
