# =============================================================================
# Spending Query Service
# =============================================================================
# Answers natural-language questions about receipt spending. A question is
# resolved to data function calls, executed concurrently against the
# receipt store, and turned into a plain-language answer with insights.
# Answers are cached per user and can be streamed as NDJSON events.
#
# Package structure:
#   finquery/
#   ├── api/          → FastAPI route handlers (query, monitoring) + deps
#   ├── agents/       → LangGraph pipeline: resolver, engine, synthesizer,
#   │                    streaming encoder, orchestrator
#   ├── catalog/      → The data functions and their argument/result models
#   ├── db/           → Database engine, session, and ORM models
#   ├── models/       → Pydantic V2 request/response schemas
#   └── services/     → Receipt store, cache, monitor, load tester, rate
#                        limiter, auth, timeframes, LLM providers
# =============================================================================
