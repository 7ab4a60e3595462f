# =============================================================================
# Query API — Natural-Language Spending Questions
# =============================================================================
#
# POST   /agent/query  answer a question (JSON or NDJSON stream), or clear
#                      the caller's cache with action="clear-cache"
# DELETE /agent/query  clear the caller's cached answers
#
# The heavy lifting happens in finquery.agents.orchestrator.QueryService;
# this module only maps HTTP to QueryRequest and back. Errors propagate as
# QueryServiceError and are rendered by the handlers in finquery.main.
# =============================================================================

from __future__ import annotations

import logging
from contextlib import aclosing

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse

from finquery.agents.orchestrator import QueryService, new_request_id
from finquery.agents.streaming import encode_ndjson
from finquery.api.deps import (
    get_current_user,
    get_query_service,
    query_rate_limit,
    rate_limit_headers,
)
from finquery.log_context import clip_text
from finquery.models.requests import QueryRequest, QueryRequestBody
from finquery.models.responses import ClearCacheResponse, SynthesizedResponse
from finquery.services.rate_limiter import RateLimitStatus

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Spending Queries"])

NDJSON_MEDIA_TYPE = "application/x-ndjson"


# ---------------------------------------------------------------------------
# POST /agent/query — Ask a spending question
# ---------------------------------------------------------------------------


@router.post(
    "/agent/query",
    response_model=SynthesizedResponse,
    summary="Ask a question about your spending",
    description=(
        "Resolves the question to data functions, runs them against your "
        "receipts and returns a plain-language answer. With streaming=true "
        "the answer arrives as newline-delimited JSON events."
    ),
    responses={200: {"content": {NDJSON_MEDIA_TYPE: {}}}},
)
async def query_endpoint(
    http_request: Request,
    body: QueryRequestBody,
    user_id: str = Depends(get_current_user),
    limit: RateLimitStatus | None = Depends(query_rate_limit),
    service: QueryService = Depends(get_query_service),
):
    headers = rate_limit_headers(limit)

    if body.action == "clear-cache":
        cleared = service.clear_cache(user_id)
        return JSONResponse(
            ClearCacheResponse(cleared=cleared).model_dump(),
            headers=headers,
        )

    request = QueryRequest.from_body(body, user_id)
    request_id = getattr(http_request.state, "request_id", None) or new_request_id()

    if request.streaming:
        logger.info("Streaming query: '%s'", clip_text(request.query))

        async def event_lines():
            async with aclosing(service.stream(request, request_id)) as events:
                async for event in events:
                    yield encode_ndjson(event)

        return StreamingResponse(
            event_lines(),
            media_type=NDJSON_MEDIA_TYPE,
            headers={
                **headers,
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    response = await service.answer(request, request_id)
    return JSONResponse(response.wire(), headers=headers)


# ---------------------------------------------------------------------------
# DELETE /agent/query — Clear cached answers
# ---------------------------------------------------------------------------


@router.delete(
    "/agent/query",
    response_model=ClearCacheResponse,
    summary="Clear your cached answers",
)
async def clear_cache_endpoint(
    user_id: str = Depends(get_current_user),
    service: QueryService = Depends(get_query_service),
) -> ClearCacheResponse:
    return ClearCacheResponse(cleared=service.clear_cache(user_id))
