"""Tests for context schemas and the vector payload projection."""

import pytest
import pydantic

from context_engine.common.schemas import (
    Context,
    ContextMetadata,
    ContextTier,
    ContextType,
    CreateContextRequest,
    FeedbackEvent,
    RetrievalRequest,
    UpdateContextRequest,
    TIER_SEARCH_ORDER,
    build_vector_payload,
    context_generation,
    payload_generation,
)


class TestEnums:
    def test_tier_search_order(self):
        assert [t.value for t in TIER_SEARCH_ORDER] == ["workspace", "hybrid", "global"]

    def test_type_values(self):
        assert {t.value for t in ContextType} == {
            "file", "symbol", "documentation", "conversation", "error", "architecture",
        }


class TestContextMetadata:
    def test_absent_confidence_means_full(self):
        assert ContextMetadata().effective_confidence == 1.0
        assert ContextMetadata(confidence=0.4).effective_confidence == 0.4

    def test_merged_routes_unknown_keys_to_extra(self):
        meta = ContextMetadata(source="a.py", tags=["x"], extra={"lang": "py"})
        merged = meta.merged({"tags": ["y"], "owner": "team-a", "extra": {"lines": 10}})

        assert merged.source == "a.py"
        assert merged.tags == ["y"]
        assert merged.extra == {"lang": "py", "owner": "team-a", "lines": 10}
        # original untouched
        assert meta.tags == ["x"]

    def test_confidence_bounds(self):
        with pytest.raises(pydantic.ValidationError):
            ContextMetadata(confidence=1.2)
        with pytest.raises(pydantic.ValidationError):
            ContextMetadata(usage_count=-1)


class TestRequests:
    def test_create_rejects_blank_content(self):
        with pytest.raises(pydantic.ValidationError):
            CreateContextRequest(workspace_id="ws", tier="workspace", type="file", content="   ")

    def test_create_rejects_empty_workspace(self):
        with pytest.raises(pydantic.ValidationError):
            CreateContextRequest(workspace_id="", tier="workspace", type="file", content="x")

    def test_create_rejects_unknown_tier(self):
        with pytest.raises(pydantic.ValidationError):
            CreateContextRequest(workspace_id="ws", tier="team", type="file", content="x")

    def test_update_accepts_metadata_model(self):
        req = UpdateContextRequest(context_id="c1", metadata=ContextMetadata(source="s"))
        assert isinstance(req.metadata, dict)
        assert req.metadata["source"] == "s"

    def test_retrieval_limit_must_be_positive(self):
        with pytest.raises(pydantic.ValidationError):
            RetrievalRequest(query="q", workspace_id="ws", limit=0)

    def test_feedback_rating_range(self):
        with pytest.raises(pydantic.ValidationError):
            FeedbackEvent(context_id="c1", helpful=True, rating=6)


class TestPayload:
    def test_payload_has_no_content(self):
        context = Context(
            id="c1",
            workspace_id="ws",
            tier=ContextTier.HYBRID,
            type=ContextType.SYMBOL,
            content="secret body",
            metadata=ContextMetadata(source="lib.py", tags=["t"], usage_count=3),
        )
        payload = build_vector_payload(context)

        assert "content" not in payload
        assert payload["tier"] == "hybrid"
        assert payload["type"] == "symbol"
        assert payload["confidence"] == 1.0
        assert "usage_count" not in payload
        assert payload_generation(payload) == context_generation(context)

    def test_reference_time_falls_back_to_updated_at(self, make_context):
        context = make_context(age_days=3)
        assert context.reference_time == context.updated_at
