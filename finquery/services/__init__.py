# =============================================================================
# Services Package — Collaborators and Shared State
# =============================================================================
#   - receipt_store.py: ReceiptStore protocol (PostgreSQL, in-memory)
#   - timeframes.py: "last month" / "past 3 weeks" → date windows
#   - cache.py: response cache with at-most-one computation per key
#   - monitor.py: rolling performance window, dashboard, alerts
#   - load_tester.py: synthetic traffic through QueryService.answer
#   - rate_limiter.py: Redis sliding window per user and route scope
#   - auth.py: session token generation and hashing
#   - llm.py: Multi-provider LLM abstraction (Anthropic, OpenAI-compatible)
# =============================================================================
