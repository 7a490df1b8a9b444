"""User-supplied masking of span payloads before export.

A mask is any callable accepting the keyword argument ``data`` and returning
the masked value::

    def mask(*, data):
        if isinstance(data, str):
            return re.sub(r"api_key=\\w+", "api_key=***", data)
        return data

The mask runs on the serialized input / output attributes of every exported
span. A mask that raises degrades to a fixed sentinel for that one field; it
never stops the span from being exported.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from .attributes import serialize

logger = logging.getLogger(__name__)

__all__ = ["MaskFunction", "MASK_FAILED_SENTINEL", "apply_mask"]

MaskFunction = Callable[..., Any]

MASK_FAILED_SENTINEL = "<fully masked due to failed mask function>"


def _as_attribute_value(value: Any) -> Any:
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
        return list(value)
    return serialize(value)


def apply_mask(mask: Optional[MaskFunction], data: Any) -> Any:
    """Run `mask` on `data`, returning the sentinel if the mask raises."""
    if mask is None:
        return data
    try:
        masked = mask(data=data)
    except Exception as e:
        logger.warning(
            "Applying mask function failed, fully masking property: %s", e
        )
        return MASK_FAILED_SENTINEL
    return _as_attribute_value(masked)
