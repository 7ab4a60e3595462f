# =============================================================================
# Insight Synthesizer — Function Results → Message + Insights
# =============================================================================
#
# Turns the (possibly partial) list of FunctionResults into:
#   - message:  a few plain sentences answering the question
#   - insights: short standalone observations for the UI to list
#   - complete: True when every invocation succeeded
#
# Each catalog function has a describer that reads its payload through the
# function's result model. Formatting rules:
#   currency     $1,234.56
#   percentages  12.5%
#   empty period "No data for this period: ..."
# A payload that does not fit its result model is skipped and noted, and
# failed calls are disclosed as "Some data was unavailable: ...".
# The output depends only on the results, so identical inputs always give
# identical text.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from pydantic import BaseModel, ValidationError

from finquery.agents.engine import FunctionResult
from finquery.catalog import CATALOG
from finquery.catalog.schemas import (
    AnomalyResult,
    CategorySpendingResult,
    ComparisonResult,
    CustomPeriodResult,
    TimeSpendingResult,
    TopCategoriesResult,
    TopVendorsResult,
    TrendResult,
    VendorSpendingResult,
)
from finquery.errors import UnresolvableQuery

logger = logging.getLogger(__name__)

GREETING_MESSAGE = (
    "Hi! I can answer questions about your spending. Try \"How much did I "
    "spend on food last month?\" or \"What are my top merchants this year?\""
)
CLARIFY_MESSAGE = UnresolvableQuery.public_message
NOT_INTERPRETED_NOTE = "Some results could not be interpreted."

_REASON_TEXT = {
    "timeout": "timed out",
    "dependency": "depends on unavailable data",
    "invalid_arguments": "invalid request",
    "cancelled": "cancelled",
    "error": "failed",
}


@dataclass(frozen=True)
class Synthesis:
    message: str
    insights: list[str]
    complete: bool


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def money(value: float) -> str:
    return f"${value:,.2f}"


def percent(value: float) -> str:
    return f"{value:.1f}%"


def period(label: str) -> str:
    """Render a window label as a phrase that follows a verb."""
    if label in ("today", "yesterday"):
        return label
    if label in ("year to date", "ytd"):
        return "so far this year"
    if label == "all time":
        return "overall"
    if " to " in label:
        return f"from {label}"
    if label.startswith("last ") and label.endswith("s"):
        return f"in the {label}"
    if label.startswith(("last ", "this ", "past ", "previous ")):
        return label
    return f"in {label}"


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'' if count == 1 else 's'}"


def _function_label(name: str) -> str:
    return name.removeprefix("get_").replace("_", " ")


# ---------------------------------------------------------------------------
# Describers: payload model → (sentence, insights)
# ---------------------------------------------------------------------------


def _category(r: CategorySpendingResult) -> tuple[str, list[str]]:
    when = period(r.window.label)
    if r.count == 0:
        return f"No data for this period: no {r.category} purchases {when}.", []
    insights = [f"Average {r.category} purchase: {money(r.total / r.count)}"]
    return (
        f"You spent {money(r.total)} on {r.category} {when} "
        f"({_plural(r.count, 'purchase')}).",
        insights,
    )


def _time(r: TimeSpendingResult) -> tuple[str, list[str]]:
    when = period(r.window.label)
    if r.count == 0:
        return f"No data for this period: no purchases {when}.", []
    return (
        f"You spent {money(r.total)} {when} across {_plural(r.count, 'purchase')}.",
        [f"Average purchase: {money(r.total / r.count)}"],
    )


def _vendor(r: VendorSpendingResult) -> tuple[str, list[str]]:
    when = period(r.window.label)
    if r.count == 0:
        return f"No data for this period: no purchases at {r.vendor} {when}.", []
    return (
        f"You spent {money(r.total)} at {r.vendor} {when} "
        f"({_plural(r.count, 'purchase')}).",
        [f"Average {r.vendor} purchase: {money(r.total / r.count)}"],
    )


def _custom(r: CustomPeriodResult) -> tuple[str, list[str]]:
    when = period(r.window.label)
    if r.count == 0:
        return f"No data for this period: no purchases {when}.", []
    insights = []
    if r.breakdown:
        top = r.breakdown[0]
        share = top.total / r.total * 100 if r.total else 0.0
        insights.append(
            f"Largest category: {top.category} ({money(top.total)}, {percent(share)})"
        )
    return (
        f"You spent {money(r.total)} {when} across {_plural(r.count, 'purchase')}.",
        insights,
    )


def _comparison(r: ComparisonResult) -> tuple[str, list[str]]:
    a, b = r.period_a, r.period_b
    when_a, when_b = period(a.window.label), period(b.window.label)
    scope = ""
    if r.category:
        scope = f" on {r.category}"
    elif r.vendor:
        scope = f" at {r.vendor}"
    if a.count == 0 and b.count == 0:
        return f"No data for this period: no spending{scope} {when_a} or {when_b}.", []

    sentence = f"You spent {money(b.total)}{scope} {when_b} compared with {money(a.total)} {when_a}"
    insights = []
    if r.percent_change is None:
        sentence += f"; there was no spending {when_a} to compare against."
    elif r.difference == 0:
        sentence += ", exactly the same amount."
        insights.append("Spending was unchanged")
    else:
        direction = "up" if r.difference > 0 else "down"
        sentence += (
            f", {direction} {money(abs(r.difference))} "
            f"({percent(abs(r.percent_change))})."
        )
        verb = "increased" if r.difference > 0 else "decreased"
        insights.append(f"Spending {verb} by {percent(abs(r.percent_change))}")
    return sentence, insights


def _anomalies(r: AnomalyResult) -> tuple[str, list[str]]:
    when = period(r.window.label)
    if not r.anomalies:
        return f"No unusual spending found {when}.", []
    insights = [a.reason for a in r.anomalies[:5]]
    if r.historical_average:
        insights.append(f"Typical purchase over the prior 3 months: {money(r.historical_average)}")
    return (
        f"Found {_plural(len(r.anomalies), 'unusual purchase')} {when}.",
        insights,
    )


def _trends(r: TrendResult) -> tuple[str, list[str]]:
    when = period(r.window.label)
    if not r.points:
        return f"No data for this period: no spending {when}.", []
    low = min(r.points, key=lambda p: (p.total, p.period))
    high = max(r.points, key=lambda p: (p.total, p.period))
    sentence = (
        f"Your spending {when} ranged from {money(low.total)} ({low.period}) "
        f"to {money(high.total)} ({high.period}) across "
        f"{_plural(len(r.points), r.interval)}."
    )
    first, last = r.points[0], r.points[-1]
    insights = [
        f"Average per {r.interval}: {money(sum(p.total for p in r.points) / len(r.points))}"
    ]
    if len(r.points) > 1 and first.total:
        change = (last.total - first.total) / first.total * 100
        insights.append(
            f"Spending went from {money(first.total)} in {first.period} to "
            f"{money(last.total)} in {last.period} ({change:+.1f}%)"
        )
    return sentence, insights


def _top_vendors(r: TopVendorsResult) -> tuple[str, list[str]]:
    when = period(r.window.label)
    if not r.items:
        return f"No data for this period: no purchases {when}.", []
    listed = ", ".join(
        f"{i.vendor} ({money(i.total)}, {percent(i.share)})" for i in r.items[:3]
    )
    top = r.items[0]
    return (
        f"Your top merchants {when}: {listed}.",
        [f"{top.vendor} accounts for {percent(top.share)} of your spending"],
    )


def _top_categories(r: TopCategoriesResult) -> tuple[str, list[str]]:
    when = period(r.window.label)
    if not r.items:
        return f"No data for this period: no purchases {when}.", []
    listed = ", ".join(
        f"{i.category} ({money(i.total)}, {percent(i.share)})" for i in r.items[:3]
    )
    top = r.items[0]
    return (
        f"Your top categories {when}: {listed}.",
        [f"{top.category} is your biggest category at {percent(top.share)} of spending"],
    )


_DESCRIBERS: dict[str, Callable[[BaseModel], tuple[str, list[str]]]] = {
    "get_spending_by_category": _category,
    "get_spending_by_time": _time,
    "get_spending_by_vendor": _vendor,
    "get_spending_for_custom_period": _custom,
    "get_spending_comparison": _comparison,
    "detect_spending_anomalies": _anomalies,
    "get_spending_trends": _trends,
    "summarize_top_vendors": _top_vendors,
    "summarize_top_categories": _top_categories,
}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def synthesize(results: list[FunctionResult], *, query: str = "") -> Synthesis:
    """
    Build the answer for a batch of results.

    An empty batch is the small-talk path and gets the greeting message.
    """
    if not results:
        return Synthesis(message=GREETING_MESSAGE, insights=[], complete=True)

    sentences: list[str] = []
    insights: list[str] = []
    unavailable: list[str] = []
    uninterpretable = False

    for result in results:
        if not result.success:
            reason = result.error.reason if result.error else "error"
            unavailable.append(
                f"{_function_label(result.name)} ({_REASON_TEXT.get(reason, 'failed')})"
            )
            continue

        describer = _DESCRIBERS.get(result.name)
        entry = CATALOG.get(result.name)
        if describer is None or entry is None:
            uninterpretable = True
            continue
        try:
            model = entry.result_model.model_validate(result.payload)
            sentence, found = describer(model)
        except (ValidationError, TypeError, ValueError, ZeroDivisionError) as e:
            logger.warning("Could not interpret %s payload: %s", result.name, e)
            uninterpretable = True
            continue
        sentences.append(sentence)
        insights.extend(i for i in found if i not in insights)

    if not sentences:
        sentences.append("I couldn't retrieve your spending data right now.")
    if unavailable:
        sentences.append(f"Some data was unavailable: {', '.join(unavailable)}.")
    if uninterpretable:
        sentences.append(NOT_INTERPRETED_NOTE)

    logger.debug(
        "Synthesized %d sentences, %d insights for '%s'",
        len(sentences), len(insights), query[:80],
    )
    return Synthesis(
        message=" ".join(sentences),
        insights=insights,
        complete=not unavailable,
    )


def clarify() -> Synthesis:
    """Answer for a query nothing in the catalog could serve."""
    return Synthesis(message=CLARIFY_MESSAGE, insights=[], complete=True)
