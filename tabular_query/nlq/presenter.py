"""
Presenter - builds the instruction/data messages handed to the chat layer.

Two conventions hold for every message built here:
- deterministic replies (exports, compare reports) start with the EMIT token
  and are shown verbatim, bypassing generation
- JSON payloads are fenced and labelled (DEEP_FETCH_JSON, MEMORY_JSON, ...)
  so a renderer can find and parse them
"""

import json
import math
from typing import Any, Dict, List, Sequence

from tabular_query.core.constants import (
    CAPABILITIES_LABEL,
    DEEP_FETCH_LABEL,
    EMIT_TOKEN,
    KB_LABEL,
    MAX_DELETED_SHOWN,
    MAX_NEW_SHOWN,
    MAX_UPDATED_SHOWN,
    MEMORY_LABEL,
)
from tabular_query.core.profile import DatasetProfile
from tabular_query.domain.models import Aggregation, Message
from tabular_query.engine.diff import DiffResult, truncate
from tabular_query.engine.export import ExportFile

EMPTY_CELL = "(empty)"


def _json_safe(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


def fence(label: str, payload: Any) -> str:
    body = json.dumps(_json_safe(payload), ensure_ascii=False, default=str)
    return f"{label}:\n```json\n{body}\n```"


def system(content: str) -> Message:
    return Message(role="system", content=content)


def emit(content: str) -> Message:
    return Message(role="system", content=f"{EMIT_TOKEN}\n{content}")


def is_verbatim(message: Message) -> bool:
    return message.content.lstrip().startswith(EMIT_TOKEN)


# =============================================================================
# Framing
# =============================================================================

def scope_rubric(profile: DatasetProfile) -> Message:
    brands = ", ".join(profile.brand_names) if profile.brand_names else "your brand"
    return system(
        "Scope rubric:\n"
        f"- PRIMARY SCOPE: {profile.dataset_name} {profile.item_plural}. Counts, date ranges, latest/oldest, "
        "status mix and key lookups. Answer only from the fenced JSON payloads in these instructions.\n"
        "- META (capabilities/help): answer briefly with 4-6 example prompts.\n"
        f"- BRAND ({brands}): answer from KB_JSON only; if a fact is missing, say you don't know.\n"
        "- SERVICE (weather/time/maps): one sentence saying there is no live access, then 3-5 in-scope ideas.\n"
        "- OUT OF SCOPE: decline briefly and suggest in-scope questions.\n"
        "Formatting: concise sentences or bullets. Use a table only when asked or when the table preference is on."
    )


def table_notice(persistent: bool) -> Message:
    if persistent:
        return system("Tables are now the default format for this conversation.")
    return system("Use a table for this reply.")


def render_instruction(kind: str, use_table: bool) -> str:
    if kind == "series":
        return (
            "Render SERIES as a Markdown table with its columns in order."
            if use_table else
            "List each bucket of SERIES as: BUCKET - Total: X (Registered: Y, Pending: Z)."
        )
    if kind == "detail":
        return (
            "Render the rows as a compact Markdown table."
            if use_table else
            "Summarize the rows briefly; list at most 10 with key, date and status."
        )
    return (
        "Use a compact Markdown table where it helps."
        if use_table else
        "Answer in concise sentences or bullets."
    )


def deep_fetch(instruction: str, payload: Dict[str, Any]) -> Message:
    return system(f"{instruction}\n\n{fence(DEEP_FETCH_LABEL, payload)}")


def apology(reason: str = "") -> Message:
    detail = f" ({reason})" if reason else ""
    return system(
        f"The data lookup could not be completed{detail}. Apologize briefly and suggest retrying or narrowing the request."
    )


# =============================================================================
# Exports
# =============================================================================

def download_line(filename: str, url: str) -> Message:
    return emit(f"📎 Download: [{filename}]({url})")


def too_large(export_file: ExportFile, suggestions: Sequence[str]) -> Message:
    size_mb = export_file.size / 1_000_000
    lines = [
        f"**{export_file.filename}** is too large to attach ({size_mb:.1f} MB). Please narrow your request, for example:",
    ]
    lines.extend(f"- {s}" for s in suggestions)
    return emit("\n".join(lines))


def export_suggestions(profile: DatasetProfile, now_year: int) -> List[str]:
    plural = profile.item_plural
    return [
        f"export all {plural} for {now_year - 1}",
        f"export {plural} from the last 90 days",
        f"export pending {plural} only",
        f"export the latest 500 {plural}",
    ]


def nothing_to_export(scope_label: str) -> Message:
    return emit(f"No rows found for {scope_label}; nothing to export. Try a wider date range.")


# =============================================================================
# Compare
# =============================================================================

def attach_file() -> Message:
    return emit(
        "Please attach a CSV/XLSX to compare.\n"
        "- compare this to last month\n"
        "- diff this file vs 2024\n"
        "- show what's new by TRN"
    )


def _more(count: int) -> List[str]:
    return [f"- …{count} more"] if count else []


def _shown(value: str) -> str:
    return value if value != "" else EMPTY_CELL


def compare_report(result: DiffResult, upload_name: str, baseline_label: str) -> Message:
    lines = [
        f"**Compare:** {upload_name} vs {baseline_label}",
        f"Baseline rows: {result.baseline_count} · Upload rows: {result.upload_count}",
    ]
    if result.is_empty():
        lines.append("")
        lines.append("_No differences detected vs baseline._")
        return emit("\n".join(lines))

    lines.append(f"**Totals:** New {len(result.new)} · Updated {len(result.updated)} · Deleted {len(result.deleted)}")

    if result.updated:
        shown, more = truncate(result.updated, MAX_UPDATED_SHOWN)
        lines.extend(["", f"**Updated ({len(result.updated)})**"])
        for update in shown:
            parts = [f"{c.label}: {_shown(c.before)} → {_shown(c.after)}" for c in update.changes]
            if update.newly_populated:
                parts.append(f"+{update.newly_populated_count} newly populated")
            lines.append(f"- **{update.key}**: " + "; ".join(parts))
        lines.extend(_more(more))

    if result.new:
        shown, more = truncate(result.new, MAX_NEW_SHOWN)
        lines.extend(["", f"**New ({len(result.new)})**"])
        lines.extend(f"- {key}" for key in shown)
        lines.extend(_more(more))

    if result.deleted:
        shown, more = truncate(result.deleted, MAX_DELETED_SHOWN)
        lines.extend(["", f"**Deleted ({len(result.deleted)})**"])
        lines.extend(f"- {key}" for key in shown)
        lines.extend(_more(more))

    lines.extend(["", quick_take(result), "", "_Say \"export it\" to download the full diff._"])
    return emit("\n".join(lines))


def quick_take(result: DiffResult) -> str:
    facts = []
    if result.updated:
        top = result.changes_by_field()[:3]
        field_text = ", ".join(f"{label} ×{count}" for label, count in top)
        fact = f"{len(result.updated)} updated with {result.total_changes} field changes"
        if field_text:
            fact += f" (mostly {field_text})"
        facts.append(fact)
    if result.total_newly_populated:
        facts.append(f"{result.total_newly_populated} fields newly populated")
    if result.new:
        facts.append(f"{len(result.new)} new")
    if result.deleted:
        facts.append(f"{len(result.deleted)} missing from the upload")
    if result.unkeyed_upload_rows:
        facts.append(f"{result.unkeyed_upload_rows} upload rows had no TRN/ID and were skipped")
    return "_Quick take:_ " + "; ".join(facts) + "."


def table_markdown(aggregation: Aggregation) -> str:
    header = "| " + " | ".join(aggregation.columns) + " |"
    divider = "| " + " | ".join("---" for _ in aggregation.columns) + " |"
    body = ["| " + " | ".join(cell.replace("|", "\\|") for cell in row) + " |" for row in aggregation.rows]
    return "\n".join([header, divider] + body)


def yoy_report(aggregation: Aggregation, profile: DatasetProfile) -> Message:
    if not aggregation.rows:
        return emit(f"No dated {profile.item_plural} found to compare year over year.")
    return emit(
        f"**{profile.dataset_name} {profile.item_plural}: year over year**\n\n"
        f"{table_markdown(aggregation)}\n\n"
        "_Say \"export it\" to download this table._"
    )


# =============================================================================
# Small talk
# =============================================================================

def example_prompts(profile: DatasetProfile) -> List[str]:
    plural = profile.item_plural
    return [
        f"How many {plural} last year?",
        f"{plural.capitalize()} per month between Feb and Aug 2025",
        f"Show the latest 10 pending {plural}",
        f"What's the oldest {profile.item_singular}?",
        "Compare this file to our data (attach a CSV/XLSX)",
        "Export it as xlsx",
    ]


def capabilities(profile: DatasetProfile, use_table: bool) -> Message:
    payload = {"dataset": profile.dataset_name, "examples": example_prompts(profile)}
    layout = "a Markdown table (Try this | Purpose)" if use_table else "bullet points"
    return system(
        f"Describe briefly what you can answer about {profile.dataset_name} {profile.item_plural}, "
        f"then list the examples as {layout}.\n\n{fence(CAPABILITIES_LABEL, payload)}"
    )


def service_disclaimer(profile: DatasetProfile, use_table: bool) -> Message:
    layout = "in a Markdown table (Try this | Purpose)" if use_table else "as bullet points"
    ideas = "; ".join(example_prompts(profile)[:4])
    return system(
        "You do NOT have live access to external services here. Say that in one sentence, "
        f"then present 3-5 in-scope ideas {layout}. Ideas: {ideas}."
    )


def knowledge(profile: DatasetProfile) -> Message:
    return system(
        "Answer using KB_JSON only. Be concise and factual. If a field is missing, say you don't know.\n\n"
        + fence(KB_LABEL, profile.knowledge_base)
    )


def memory(payload: Dict[str, Any]) -> Message:
    return system(
        "Background memory for this conversation. Use it for quick answers; prefer DEEP_FETCH_JSON when present.\n\n"
        + fence(MEMORY_LABEL, payload)
    )
