from .langfuse import (
    BaseObservationAttributes,
    EventAttributes,
    GenerationAttributes,
    ObservationAttributes,
    ObservationLevel,
    ObservationType,
    PromptReference,
    SpanAttributes,
    TraceAttributes,
    coerce_observation_attributes,
    coerce_trace_attributes,
)

__all__ = [
    "BaseObservationAttributes",
    "EventAttributes",
    "GenerationAttributes",
    "ObservationAttributes",
    "ObservationLevel",
    "ObservationType",
    "PromptReference",
    "SpanAttributes",
    "TraceAttributes",
    "coerce_observation_attributes",
    "coerce_trace_attributes",
]
