# =============================================================================
# Request Models — Pydantic V2 Schemas
# =============================================================================
#
# Two kinds of input model live here:
#   - API bodies (QueryRequestBody, LoadTestRequest): what clients send,
#     camelCase on the wire, validated by FastAPI
#   - QueryRequest: the immutable per-call input the pipeline runs on,
#     built from a body plus the authenticated user id
# =============================================================================

from __future__ import annotations

from datetime import date
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

DEFAULT_LOAD_TEST_QUERY = "How much did I spend last month?"


class QueryFilters(BaseModel):
    """Optional constraints that override what the resolver picks."""

    category: str | None = Field(default=None, examples=["Food & Dining"])
    merchant: str | None = Field(default=None, examples=["Starbucks"])
    start_date: date | None = None
    end_date: date | None = None

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def canonical(self) -> dict[str, str]:
        """Set filters only, with ISO dates; stable input for cache keys."""
        return {
            key: value.isoformat() if isinstance(value, date) else value
            for key, value in self.model_dump().items()
            if value not in (None, "")
        }


class ConversationTurn(BaseModel):
    """One prior turn replayed by the client as conversation context."""

    role: Literal["user", "assistant"]
    content: str = Field(..., max_length=4000)

    model_config = ConfigDict(frozen=True)


class QueryRequestBody(BaseModel):
    """
    Request body for POST /agent/query.

    Example:
        {
            "query": "How much did I spend on food last month?",
            "streaming": false
        }

    `action: "clear-cache"` drops the caller's cached answers instead of
    answering; `query` may be empty in that case.
    """

    query: str = Field(
        default="",
        max_length=2000,
        description="The question about your spending",
        examples=["How much did I spend on food last month?"],
    )
    streaming: bool = Field(
        default=False,
        description="Stream progress as NDJSON events instead of one JSON body",
    )
    filters: QueryFilters | None = None
    context: list[ConversationTurn] = Field(
        default_factory=list,
        max_length=20,
        description="Prior conversation turns, oldest first",
    )
    action: Literal["query", "clear-cache"] = "query"

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {"query": "How much did I spend on food last month?", "streaming": False},
                {"query": "What are my top merchants this year?", "streaming": True},
                {"action": "clear-cache"},
            ]
        }
    )

    @model_validator(mode="after")
    def _query_required(self) -> QueryRequestBody:
        if self.action == "query" and not self.query.strip():
            raise ValueError("query must not be empty")
        return self


class QueryRequest(BaseModel):
    """Immutable input to one pipeline run."""

    user_id: str
    query: str
    streaming: bool = False
    filters: QueryFilters = Field(default_factory=QueryFilters)
    context: tuple[ConversationTurn, ...] = ()

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_body(cls, body: QueryRequestBody, user_id: str) -> QueryRequest:
        return cls(
            user_id=user_id,
            query=body.query,
            streaming=body.streaming,
            filters=body.filters or QueryFilters(),
            context=tuple(body.context),
        )


class LoadTestRequest(BaseModel):
    """
    Request body for POST /monitoring/load-test.

    Requests go through the same QueryService.answer entry point as real
    traffic, as the configured dev/test user.
    """

    test_name: str = Field(..., min_length=1, max_length=100)
    requests: int = Field(..., ge=1, le=1000)
    concurrency: int = Field(..., ge=1, le=50)
    query: str = Field(default=DEFAULT_LOAD_TEST_QUERY, min_length=1, max_length=2000)

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {"testName": "baseline", "requests": 100, "concurrency": 10},
            ]
        },
    )
