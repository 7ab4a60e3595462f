# =============================================================================
# Function Resolver — Query Text → Data Function Invocations
# =============================================================================
#
# Maps a QueryRequest to an ordered list of FunctionInvocation against the
# catalog, or raises UnresolvableQuery.
#
#   resolve(request, today, resolver)
#     ├── resolver.propose()   backend-specific intent detection
#     ├── apply_filters()      request filters override resolved arguments
#     ├── validation           argument models fill defaults, drop bad calls
#     └── canonicalize()       stable order + dedupe → deterministic plans
#
# Backends (IntentResolver protocol):
#   RuleBasedResolver — keyword/regex rules, no network, the default
#   LLMResolver       — native tool calling on the LLM, falls back to rules
#
# An empty list is a valid answer (greetings, thanks, help): the pipeline
# skips execution and returns a canned message.
#
# Arguments may reference an upstream result: {"$ref": "0.items.0.category"}
# means "field items[0].category of the invocation with order 0". The
# invocation then lists 0 in depends_on.
# =============================================================================

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from typing import Any, Protocol

from pydantic import ValidationError

from finquery.catalog import CATALOG, tool_schemas
from finquery.errors import UnresolvableQuery
from finquery.log_context import clip_text
from finquery.models.requests import QueryFilters, QueryRequest
from finquery.services.llm import ToolSelector, get_tool_selector
from finquery.services.timeframes import (
    DEFAULT_TIMEFRAME,
    MONTH_NAMES,
    extract_timeframes,
    parse_timeframe,
)

logger = logging.getLogger(__name__)

REF_KEY = "$ref"


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FunctionInvocation:
    """One resolved call: catalog name, arguments, order and dependencies."""

    name: str
    arguments: dict[str, Any]
    order: int
    depends_on: tuple[int, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "arguments": self.arguments,
            "order": self.order,
            "depends_on": list(self.depends_on),
        }


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def has_refs(value: Any) -> bool:
    if isinstance(value, dict):
        if REF_KEY in value:
            return True
        return any(has_refs(v) for v in value.values())
    if isinstance(value, list):
        return any(has_refs(v) for v in value)
    return False


def _map_refs(value: Any, fn) -> Any:
    if isinstance(value, dict):
        if set(value) == {REF_KEY}:
            return fn(value[REF_KEY])
        return {k: _map_refs(v, fn) for k, v in value.items()}
    if isinstance(value, list):
        return [_map_refs(v, fn) for v in value]
    return value


def _split_ref(ref: str) -> tuple[int, str]:
    head, _, path = str(ref).partition(".")
    return int(head), path


# ---------------------------------------------------------------------------
# Canonicalization
# ---------------------------------------------------------------------------


def canonicalize(invocations: list[FunctionInvocation]) -> list[FunctionInvocation]:
    """
    Put an invocation list into its canonical form.

    - identical calls (same name, arguments and upstream calls) collapse
      into one
    - calls whose dependencies are missing are dropped
    - order is a topological sort, ties broken by (name, canonical args)
    - order indices are reassigned 0..n-1 and depends_on / $ref rewritten
    """
    by_order = {inv.order: inv for inv in invocations}

    # Drop calls that depend (transitively) on something absent
    valid: dict[int, FunctionInvocation] = {}
    changed = True
    pending = dict(by_order)
    while changed:
        changed = False
        for order, inv in list(pending.items()):
            deps = set(inv.depends_on)
            deps.update(_split_ref(r)[0] for r in _collect_refs(inv.arguments))
            if all(d in valid for d in deps):
                valid[order] = replace(inv, depends_on=tuple(sorted(deps)))
                del pending[order]
                changed = True
    for inv in pending.values():
        logger.warning("Dropping %s: unresolved dependency", inv.name)

    # Signatures identify a call independent of its order index
    signatures: dict[int, str] = {}

    def signature(order: int) -> str:
        if order not in signatures:
            inv = valid[order]
            args = _map_refs(
                inv.arguments,
                lambda ref: {REF_KEY: [signature(_split_ref(ref)[0]), _split_ref(ref)[1]]},
            )
            signatures[order] = canonical_json({
                "name": inv.name,
                "arguments": args,
                "depends_on": sorted(signature(d) for d in inv.depends_on),
            })
        return signatures[order]

    representative: dict[str, int] = {}
    alias: dict[int, int] = {}
    for order in sorted(valid):
        sig = signature(order)
        alias[order] = representative.setdefault(sig, order)

    unique = {o: valid[o] for o in set(alias.values())}

    # Kahn's algorithm with a deterministic ready set
    placed: list[int] = []
    remaining = set(unique)
    while remaining:
        ready = [
            o for o in remaining
            if all(alias[d] in placed for d in unique[o].depends_on)
        ]
        ready.sort(key=lambda o: (unique[o].name, canonical_json(unique[o].arguments), signature(o)))
        first = ready[0]
        placed.append(first)
        remaining.discard(first)

    new_index = {old: i for i, old in enumerate(placed)}

    def remap(old: int) -> int:
        return new_index[alias[old]]

    def remap_ref(ref: str) -> dict[str, str]:
        head, path = _split_ref(ref)
        target = str(remap(head))
        return {REF_KEY: f"{target}.{path}" if path else target}

    result = []
    for old in placed:
        inv = unique[old]
        result.append(FunctionInvocation(
            name=inv.name,
            arguments=_map_refs(inv.arguments, remap_ref),
            order=new_index[old],
            depends_on=tuple(sorted({remap(d) for d in inv.depends_on})),
        ))
    return result


def _collect_refs(value: Any) -> list[str]:
    found: list[str] = []
    _map_refs(value, lambda ref: found.append(ref) or {REF_KEY: ref})
    return found


# ---------------------------------------------------------------------------
# Filters & validation
# ---------------------------------------------------------------------------

_CATEGORY_VARIANT = {
    "get_spending_by_time": "get_spending_by_category",
}
_VENDOR_VARIANT = {
    "get_spending_by_time": "get_spending_by_vendor",
    "get_spending_by_category": "get_spending_by_vendor",
}


def apply_filters(
    invocations: list[FunctionInvocation],
    filters: QueryFilters,
    today: date,
) -> list[FunctionInvocation]:
    """
    Let explicit request filters override resolved arguments.

    category/merchant replace the matching argument where the function has
    one; a plain total becomes the category/vendor variant. A date range
    replaces the timeframe phrase.
    """
    if not filters.canonical():
        return invocations

    timeframe = None
    if filters.start_date or filters.end_date:
        start = filters.start_date or date(1970, 1, 1)
        end = filters.end_date or today
        if start > end:
            start, end = end, start
        timeframe = f"{start.isoformat()} to {end.isoformat()}"

    adjusted = []
    for inv in invocations:
        name = inv.name
        args = dict(inv.arguments)

        if filters.merchant and name in _VENDOR_VARIANT:
            name = _VENDOR_VARIANT[name]
            args.pop("category", None)
        if filters.category and name in _CATEGORY_VARIANT:
            name = _CATEGORY_VARIANT[name]

        fields = CATALOG[name].args_model.model_fields
        if filters.category and "category" in fields:
            args["category"] = filters.category
        if filters.merchant and "vendor" in fields:
            args["vendor"] = filters.merchant

        if timeframe:
            if "timeframe" in fields:
                args["timeframe"] = timeframe
            elif name == "get_spending_for_custom_period":
                start_s, _, end_s = timeframe.partition(" to ")
                args["start_date"], args["end_date"] = start_s, end_s

        adjusted.append(replace(inv, name=name, arguments=args))
    return adjusted


def validate_invocations(invocations: list[FunctionInvocation]) -> list[FunctionInvocation]:
    """
    Validate arguments against the catalog and fill defaults.

    Unknown functions and invalid arguments are dropped with a warning.
    Calls with $ref arguments are checked by the engine once their
    references are resolved.
    """
    valid = []
    for inv in invocations:
        entry = CATALOG.get(inv.name)
        if entry is None:
            logger.warning("Dropping unknown function %r", inv.name)
            continue
        if has_refs(inv.arguments):
            valid.append(inv)
            continue
        try:
            model = entry.args_model.model_validate(inv.arguments)
        except ValidationError as e:
            logger.warning(
                "Dropping %s: invalid arguments (%d errors)",
                inv.name, e.error_count(),
            )
            continue
        valid.append(replace(inv, arguments=model.model_dump(mode="json", exclude_none=True)))
    return valid


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class IntentResolver(Protocol):
    """Backend that proposes raw invocations for a request."""

    async def propose(self, request: QueryRequest, today: date) -> list[FunctionInvocation]:
        ...


CATEGORY_SYNONYMS: dict[str, str] = {
    "food": "Food & Dining",
    "dining": "Food & Dining",
    "eating out": "Food & Dining",
    "restaurant": "Food & Dining",
    "restaurants": "Food & Dining",
    "coffee": "Food & Dining",
    "takeout": "Food & Dining",
    "lunch": "Food & Dining",
    "dinner": "Food & Dining",
    "grocery": "Groceries",
    "groceries": "Groceries",
    "supermarket": "Groceries",
    "gas": "Transportation",
    "fuel": "Transportation",
    "transport": "Transportation",
    "transportation": "Transportation",
    "rideshare": "Transportation",
    "parking": "Transportation",
    "entertainment": "Entertainment",
    "movies": "Entertainment",
    "streaming services": "Entertainment",
    "subscriptions": "Entertainment",
    "shopping": "Shopping",
    "clothes": "Shopping",
    "clothing": "Shopping",
    "health": "Healthcare",
    "healthcare": "Healthcare",
    "medical": "Healthcare",
    "pharmacy": "Healthcare",
    "utilities": "Utilities",
    "bills": "Utilities",
    "electricity": "Utilities",
    "travel": "Travel",
    "flights": "Travel",
    "hotels": "Travel",
}

_CATEGORY_RE = re.compile(
    r"\b("
    + "|".join(re.escape(k) for k in sorted(CATEGORY_SYNONYMS, key=len, reverse=True))
    + r")\b"
)

_MERCHANT_RE = re.compile(
    r"\b(?:at|from|on|to|about|with)\s+([A-Z][\w'&.-]*(?:\s+[A-Z][\w'&.-]*)*)"
)

_NOT_MERCHANTS = set(MONTH_NAMES) | {
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday",
    "sunday", "i", "my",
}

_SMALL_TALK_RE = re.compile(
    r"^(hi|hello|hey|yo|thanks|thank you|thx|cheers|good (morning|afternoon|evening)"
    r"|help|what can you do|who are you|ok|okay|great|cool)\b"
)

_SPEND_WORDS = (
    "spend", "spent", "spending", "cost", "how much", "total", "expense",
    "paid", "pay ", "purchase", "bought", "money",
)
_ANOMALY_WORDS = (
    "unusual", "anomal", "suspicious", "strange", "weird", "outlier",
    "unexpected", "odd purchase", "out of the ordinary",
)
_COMPARE_RE = re.compile(r"\b(compare|compared|vs|versus|than|difference between)\b")
_TREND_WORDS = (
    "trend", "over time", "monthly", "weekly", "daily", "per month",
    "per week", "per day", "by month", "by week", "by day", "each month",
    "each week", "each day",
)
_TOP_VENDOR_WORDS = (
    "top merchant", "top vendor", "top store", "top shop", "which merchant",
    "which store", "which vendor", "which shop", "where do i spend",
    "where did i spend", "biggest merchant", "most at", "favorite store",
    "favourite store", "merchants", "vendors", "stores",
)
_TOP_CATEGORY_WORDS = (
    "top categor", "which categor", "categories", "breakdown", "by category",
    "spend the most on", "spent the most on", "spending the most on",
)
_SUMMARY_WORDS = ("summary", "summarize", "summarise", "overview", "recap")
_FOLLOW_UP_RE = re.compile(r"^(what|how)\s+about\b|^and\b|^same\b|^what if\b")
_TOP_N_RE = re.compile(r"\btop\s+(\d{1,2})\b")
_DATE_RANGE_RE = re.compile(r"(\d{4}-\d{2}-\d{2})\s*(?:to|through|until|and|-)\s*(\d{4}-\d{2}-\d{2})")


def _has_any(text: str, words: tuple[str, ...]) -> bool:
    return any(w in text for w in words)


@dataclass
class _Signals:
    """What the rules extracted from one piece of query text."""

    text: str
    categories: list[str] = field(default_factory=list)
    vendor: str | None = None
    timeframes: list[str] = field(default_factory=list)

    @property
    def timeframe(self) -> str | None:
        return self.timeframes[0] if self.timeframes else None


class RuleBasedResolver:
    """
    Keyword and regex intent rules.

    Checked in order of specificity: anomalies, comparisons, trends,
    rankings, summaries, explicit date ranges, then plain totals.
    """

    async def propose(self, request: QueryRequest, today: date) -> list[FunctionInvocation]:
        text = " ".join(request.query.split())
        lowered = text.lower().rstrip("?.! ")

        if _SMALL_TALK_RE.match(lowered) and not self._is_spending_query(lowered):
            return []

        signals = self._signals(text)
        if signals.timeframe is None:
            inherited = self._inherited_timeframe(request)
            if inherited:
                signals.timeframes = [inherited]

        calls = self._calls_for(signals, today)
        if calls is None and request.context and (
            _FOLLOW_UP_RE.match(lowered) or signals.categories or signals.vendor
        ):
            calls = self._follow_up(request, signals, today)
        if not calls:
            raise UnresolvableQuery(f"No data function matches: {clip_text(text)}")
        return calls

    # --- extraction -------------------------------------------------------

    def _is_spending_query(self, lowered: str) -> bool:
        return _has_any(lowered, _SPEND_WORDS) or bool(_CATEGORY_RE.search(lowered))

    def _signals(self, text: str) -> _Signals:
        lowered = text.lower()
        categories: list[str] = []
        for match in _CATEGORY_RE.finditer(lowered):
            category = CATEGORY_SYNONYMS[match.group(1)]
            if category not in categories:
                categories.append(category)
        return _Signals(
            text=lowered,
            categories=categories,
            vendor=self._vendor(text),
            timeframes=extract_timeframes(lowered),
        )

    def _vendor(self, text: str) -> str | None:
        for match in _MERCHANT_RE.finditer(text):
            words = match.group(1).rstrip("?.!,'").split()
            while words and words[-1].lower() in _NOT_MERCHANTS:
                words.pop()
            if not words or words[0].lower() in _NOT_MERCHANTS:
                continue
            vendor = " ".join(words)
            if _CATEGORY_RE.fullmatch(vendor.lower()):
                continue
            return vendor
        return None

    def _inherited_timeframe(self, request: QueryRequest) -> str | None:
        for turn in reversed(request.context):
            if turn.role != "user":
                continue
            found = extract_timeframes(turn.content)
            if found:
                return found[0]
        return None

    # --- intents ----------------------------------------------------------

    def _calls_for(self, s: _Signals, today: date) -> list[FunctionInvocation] | None:
        text = s.text
        timeframe = s.timeframe or DEFAULT_TIMEFRAME
        filters = {"category": s.categories[0] if s.categories else None, "vendor": s.vendor}
        filters = {k: v for k, v in filters.items() if v}

        if _has_any(text, _ANOMALY_WORDS):
            return [_call(0, "detect_spending_anomalies", timeframe=timeframe, **filters)]

        if _COMPARE_RE.search(text) and (s.timeframes or "compare" in text):
            period_a, period_b = self._comparison_periods(s.timeframes, today)
            return [_call(
                0, "get_spending_comparison",
                period_a=period_a, period_b=period_b, **filters,
            )]

        if _has_any(text, _TREND_WORDS):
            interval = "month"
            if _has_any(text, ("daily", "per day", "by day", "each day")):
                interval = "day"
            elif _has_any(text, ("weekly", "per week", "by week", "each week")):
                interval = "week"
            if "top category" in text or "biggest category" in text:
                return [
                    _call(0, "summarize_top_categories", timeframe=timeframe, limit=1),
                    FunctionInvocation(
                        name="get_spending_trends",
                        arguments={
                            "timeframe": timeframe,
                            "interval": interval,
                            "category": {REF_KEY: "0.items.0.category"},
                        },
                        order=1,
                        depends_on=(0,),
                    ),
                ]
            return [_call(0, "get_spending_trends", timeframe=timeframe, interval=interval, **filters)]

        top_n = _TOP_N_RE.search(text)
        limit = int(top_n.group(1)) if top_n else 5
        if _has_any(text, _TOP_CATEGORY_WORDS):
            return [_call(0, "summarize_top_categories", timeframe=timeframe, limit=limit)]
        if _has_any(text, _TOP_VENDOR_WORDS) and not s.vendor:
            return [_call(0, "summarize_top_vendors", timeframe=timeframe, limit=limit)]

        if _has_any(text, _SUMMARY_WORDS):
            return [
                _call(0, "get_spending_by_time", timeframe=timeframe),
                _call(1, "summarize_top_categories", timeframe=timeframe, limit=limit),
            ]

        date_range = _DATE_RANGE_RE.search(text)
        if date_range and not (s.categories or s.vendor):
            return [_call(
                0, "get_spending_for_custom_period",
                start_date=date_range.group(1), end_date=date_range.group(2),
            )]

        if _has_any(text, _SPEND_WORDS) or s.categories or s.vendor:
            if s.vendor:
                return [_call(0, "get_spending_by_vendor", vendor=s.vendor, timeframe=timeframe)]
            if s.categories:
                return [
                    _call(i, "get_spending_by_category", category=c, timeframe=timeframe)
                    for i, c in enumerate(s.categories)
                ]
            return [_call(0, "get_spending_by_time", timeframe=timeframe)]

        return None

    def _comparison_periods(self, timeframes: list[str], today: date) -> tuple[str, str]:
        """(earlier, later) phrases; one phrase is compared with the period before it."""
        if len(timeframes) >= 2:
            first, second = timeframes[0], timeframes[1]
            if parse_timeframe(first, today).start <= parse_timeframe(second, today).start:
                return first, second
            return second, first

        current = parse_timeframe(timeframes[0] if timeframes else "this month", today)
        label = current.label
        for unit in ("week", "month", "year"):
            if label == f"this {unit}":
                return f"last {unit}", label
            if label == f"last {unit}":
                return label, f"this {unit}"
        prev_end = current.start - timedelta(days=1)
        prev_start = prev_end - timedelta(days=current.days - 1)
        return f"{prev_start.isoformat()} to {prev_end.isoformat()}", label

    def _follow_up(
        self, request: QueryRequest, current: _Signals, today: date,
    ) -> list[FunctionInvocation] | None:
        """Re-run the most recent resolvable user turn with this turn's changes."""
        for turn in reversed(request.context):
            if turn.role != "user":
                continue
            prior_signals = self._signals(" ".join(turn.content.split()))
            if prior_signals.timeframe is None and current.timeframe:
                prior_signals.timeframes = [current.timeframe]
            prior = self._calls_for(prior_signals, today)
            if not prior:
                continue
            return [self._retarget(inv, current) for inv in prior]
        return None

    def _retarget(self, inv: FunctionInvocation, s: _Signals) -> FunctionInvocation:
        name, args = inv.name, dict(inv.arguments)
        if s.vendor and name in _VENDOR_VARIANT:
            name = _VENDOR_VARIANT[name]
            args.pop("category", None)
            args["vendor"] = s.vendor
        elif s.categories and name in ("get_spending_by_time", "get_spending_by_category",
                                       "get_spending_by_vendor"):
            name = "get_spending_by_category"
            args.pop("vendor", None)
            args["category"] = s.categories[0]
        elif s.categories and "category" in CATALOG[name].args_model.model_fields:
            args["category"] = s.categories[0]
        if s.timeframe and "timeframe" in args:
            args["timeframe"] = s.timeframe
        return replace(inv, name=name, arguments=args)


def _call(order: int, name: str, **arguments: Any) -> FunctionInvocation:
    return FunctionInvocation(name=name, arguments=arguments, order=order)


# ---------------------------------------------------------------------------
# LLM backend
# ---------------------------------------------------------------------------

LLM_SYSTEM_PROMPT = """You translate questions about personal spending into \
calls to the data functions you are given as tools. Today is {today}.

Call every function needed to answer the question, in the order they should
run. To reuse a field of an earlier call's result, pass
{{"$ref": "<call index>.<field path>"}} as the argument value, where call
index counts your tool calls from 0 (for example
{{"$ref": "0.items.0.category"}}).
Call no function for greetings, thanks or requests for help."""


class LLMResolver:
    """
    Resolve intents with native tool calling on the configured LLM.

    Any provider error, malformed tool call, or reply where every call is
    invalid falls back to the rule-based resolver.
    """

    def __init__(
        self,
        selector: ToolSelector | None = None,
        fallback: IntentResolver | None = None,
    ) -> None:
        self._selector = selector
        self._fallback = fallback or RuleBasedResolver()

    async def propose(self, request: QueryRequest, today: date) -> list[FunctionInvocation]:
        messages = [
            {"role": turn.role, "content": turn.content} for turn in request.context
        ]
        messages.append({"role": "user", "content": request.query})

        try:
            selector = self._selector or get_tool_selector()
            selection = await selector.select_tools(
                messages=messages,
                tools=tool_schemas(),
                system=LLM_SYSTEM_PROMPT.format(today=today.isoformat()),
            )
        except Exception as e:
            logger.warning("LLM resolver failed (%s); falling back to rules", e)
            return await self._fallback.propose(request, today)

        if not selection.tool_calls:
            logger.info("LLM resolver chose no tools for '%s'", clip_text(request.query))
            return []

        invocations = []
        for index, call in enumerate(selection.tool_calls):
            if call.name not in CATALOG:
                logger.warning("LLM proposed unknown call %r", call.name)
                continue
            depends_on = _ref_dependencies(call.arguments, index)
            if depends_on is None:
                logger.warning("LLM call %s has a bad $ref; dropped", call.name)
                continue
            invocations.append(FunctionInvocation(
                name=call.name, arguments=call.arguments, order=index,
                depends_on=depends_on,
            ))

        invocations = validate_invocations(invocations)
        if not invocations:
            logger.warning("LLM proposed no valid calls; falling back to rules")
            return await self._fallback.propose(request, today)

        logger.info(
            "LLM resolver (%s): %s",
            selection.model, ", ".join(inv.name for inv in invocations),
        )
        return invocations


def _ref_dependencies(arguments: dict[str, Any], index: int) -> tuple[int, ...] | None:
    """Upstream call indices named by $refs; None if any ref is malformed or points forward."""
    deps = set()
    for ref in _collect_refs(arguments):
        try:
            upstream, _ = _split_ref(ref)
        except ValueError:
            return None
        if not 0 <= upstream < index:
            return None
        deps.add(upstream)
    return tuple(sorted(deps))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

_rule_resolver = RuleBasedResolver()


def get_intent_resolver(backend: str) -> IntentResolver:
    """"rules" → RuleBasedResolver; "llm" → LLMResolver with rule fallback."""
    if backend == "llm":
        return LLMResolver(fallback=_rule_resolver)
    return _rule_resolver


async def resolve(
    request: QueryRequest,
    today: date,
    resolver: IntentResolver | None = None,
) -> list[FunctionInvocation]:
    """
    Resolve a request to a canonical invocation list.

    Returns [] for small talk. Raises UnresolvableQuery when nothing in the
    catalog plausibly answers the request.
    """
    resolver = resolver or _rule_resolver
    proposed = await resolver.propose(request, today)
    if not proposed:
        return []

    filtered = apply_filters(proposed, request.filters, today)
    valid = validate_invocations(filtered)
    invocations = canonicalize(valid)
    if not invocations:
        raise UnresolvableQuery(f"No valid calls for: {clip_text(request.query)}")

    logger.info(
        "Resolved '%s' → %s",
        clip_text(request.query),
        ", ".join(inv.name for inv in invocations),
    )
    return invocations
