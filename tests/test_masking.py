from __future__ import annotations

import logging

from langfuse_pipeline.masking import MASK_FAILED_SENTINEL, apply_mask


def test_no_mask_returns_data_unchanged():
    assert apply_mask(None, "secret") == "secret"


def test_mask_applied_with_data_keyword():
    def mask(*, data):
        return data.replace("secret", "***")

    assert apply_mask(mask, "my secret value") == "my *** value"


def test_raising_mask_degrades_to_sentinel(caplog):
    def mask(*, data):
        raise RuntimeError("boom")

    with caplog.at_level(logging.WARNING, logger="langfuse_pipeline.masking"):
        assert apply_mask(mask, "payload") == MASK_FAILED_SENTINEL
    assert any("boom" in r.getMessage() for r in caplog.records)


def test_non_attribute_mask_result_is_json_encoded():
    def mask(*, data):
        return {"masked": True}

    assert apply_mask(mask, "payload") == '{"masked": true}'
