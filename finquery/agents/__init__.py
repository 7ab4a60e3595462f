# =============================================================================
# Agents Package — Query Pipeline
# =============================================================================
#   - resolver.py: question → canonical list of data function invocations
#     (rule-based by default, LLM tool selection optional)
#   - engine.py: runs invocations concurrently with dependencies, a
#     concurrency bound and a wall-clock budget
#   - synthesizer.py: function results → message + insights
#   - streaming.py: event state machine and NDJSON framing
#   - orchestrator.py: LangGraph graph + QueryService entry point
# =============================================================================
