"""
LLM Prompts for Lesson Doc Generation and Runtime Planning.

Contains prompts for:
- Node doc generation (node_doc_v1) - grounded lesson documents
- Node doc polish - meta phrasing cleanup without structural edits
- Runtime plan refinement - cadence policies for a path
- Figure/video rendering - media plan items

Each generation prompt includes:
1. Teaching and evidence rules
2. The block contract the validators enforce
3. Output format and schema rules
"""
from __future__ import annotations

import json
from typing import Any

from src.content.requirements import NodeDocRequirements, suggested_outline, template_requirement_line

NONE_MARKER = "(none)"


def _or_none(s: str | None) -> str:
    s = (s or "").strip()
    return s if s else NONE_MARKER


# =============================================================================
# Node Doc Schema
# =============================================================================

_CITATION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "chunk_id": {"type": "string"},
        "quote": {"type": "string"},
        "loc": {
            "type": "object",
            "properties": {
                "page": {"type": "integer"},
                "start": {"type": "integer"},
                "end": {"type": "integer"},
            },
        },
    },
    "required": ["chunk_id"],
}

NODE_DOC_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "schema_version": {"type": "integer"},
        "title": {"type": "string"},
        "summary": {"type": "string"},
        "concept_keys": {"type": "array", "items": {"type": "string"}},
        "estimated_minutes": {"type": "integer"},
        "blocks": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string"},
                    "type": {"type": "string"},
                    "citations": {"type": "array", "items": _CITATION_SCHEMA},
                },
                "required": ["type"],
                "additionalProperties": True,
            },
        },
    },
    "required": ["schema_version", "title", "concept_keys", "blocks"],
}

NODE_DOC_SCHEMA_NAME = "node_doc_v1"


# =============================================================================
# Node Doc Generation
# =============================================================================

NODE_DOC_SYSTEM_PROMPT = """MODE: STATIC_UNIT_DOC

You write course-quality lessons for self-study: clear narrative, vivid intuition,
a mental model, worked examples and retrieval practice.
This is NOT a chat. Do not ask the learner anything outside quick_check blocks and
do not include onboarding sections ("Entry check", "Your goal", "Format preferences").

TEACHING RULES:
- Direct, friendly, confident voice. Paragraphs carry the explanation; bullets and
  tables support it.
- Teach before test: a quick_check may only cite chunks that an earlier block
  already taught.
- Spread quick checks through the doc, never all at the end.
- Write concept names in natural language, never raw snake_case keys.
- The summary field already holds the summary; do not add a "Summary" section.

EVIDENCE RULES:
- Every block except heading/divider/video/code MUST carry non-empty citations.
- Citations reference ONLY the allowed chunk_ids. Each citation is
  {chunk_id, quote (short), loc:{page,start,end}}; use 0 for unknown locations.
- If MUST_CITE_CHUNK_IDS lists ids, cite each at least once.
- If EQUATIONS_JSON lists placeholders, replace them with equation blocks.

BLOCK CONTRACT:
- Block types: heading, paragraph, callout, code, figure, video, diagram, table,
  equation, quick_check, flashcard, divider, objectives, prerequisites,
  key_takeaways, glossary, common_mistakes, misconceptions, edge_cases,
  heuristics, steps, checklist, faq, intuition, mental_model, why_it_matters,
  connections.
- heading: level 2-4 and text. paragraph/intuition/mental_model/why_it_matters: md.
- callout: variant (info|tip|warning|quote), title, md.
- list blocks use items_md; steps use steps_md; glossary uses terms
  [{term, definition_md}]; faq uses qas [{question_md, answer_md}].
- quick_check: kind (short_answer|true_false|mcq), prompt_md, answer_md,
  options [{id,text}], answer_id.
- flashcard: front_md, back_md.
- diagram: kind (svg|mermaid), source ONLY (no prose, no code fences), caption.
- figure/video URLs MUST come from AVAILABLE_MEDIA_ASSETS.
- Include a tip callout titled exactly "Worked example".

OUTPUT:
Return ONLY valid JSON matching the node_doc_v1 schema with schema_version=1."""


def format_chunk_id_bullets(ids: list[str]) -> str:
    lines = [f"- {i}" for i in ids if str(i).strip()]
    return "\n".join(lines) if lines else NONE_MARKER


def requirements_block(req: NodeDocRequirements) -> str:
    rows = [
        ("word_count", req.min_word_count),
        ("paragraph blocks", req.min_paragraphs),
        ("callout blocks", req.min_callouts),
        ("quick_check blocks", req.min_quick_checks),
        ("flashcard blocks", req.min_flashcards),
        ("headings (level 2-4)", req.min_headings),
        ("diagram blocks", req.min_diagrams),
        ("table blocks", req.min_tables),
        ("why_it_matters blocks", req.min_why_it_matters),
        ("intuition blocks", req.min_intuition),
        ("mental_model blocks", req.min_mental_models),
        ("misconceptions/common_mistakes blocks", req.min_pitfalls),
        ("steps blocks", req.min_steps),
        ("checklist blocks", req.min_checklist),
    ]
    lines = [f"- Minimum {label}: {n}" for label, n in rows]
    if req.require_media:
        lines.append("- Must include at least one of: figure | diagram | table")
    if req.require_example:
        lines.append('- Must include a tip callout titled exactly "Worked example"')
    return "\n".join(lines)


def build_node_doc_user_prompt(
    *,
    title: str,
    goal: str,
    concept_keys: list[str],
    node_kind: str,
    doc_template: str,
    req: NodeDocRequirements,
    excerpts: str,
    allowed_chunk_ids: list[str],
    must_cite_ids: list[str],
    prev_title: str = "",
    next_title: str = "",
    module_title: str = "",
    outline_headings: list[str] | None = None,
    equations_json: str = "",
    signals_json: str = "",
    assets_json: str = "",
    diagrams_disabled: bool = False,
) -> str:
    """Render the per-node user prompt. Validation feedback is appended by the caller."""
    outline = "\n".join(f"- {h}" for h in outline_headings or []) or NONE_MARKER
    extra = template_requirement_line(doc_template, diagrams_disabled)
    return f"""NODE_TITLE: {title}
NODE_GOAL: {_or_none(goal)}
CONCEPT_KEYS: {", ".join(concept_keys)}
NODE_KIND: {node_kind}
DOC_TEMPLATE: {doc_template}
PREV_NODE_TITLE (use verbatim if provided): {_or_none(prev_title)}
NEXT_NODE_TITLE (use verbatim if provided): {_or_none(next_title)}
MODULE_TITLE (use verbatim if provided): {_or_none(module_title)}

OUTLINE_HEADINGS (use verbatim, in this order):
{outline}

REQUIREMENTS:
{requirements_block(req)}
{extra}

SUGGESTED_SECTION_FLOW (internal guidance; do not mention it):
{suggested_outline(node_kind, doc_template)}

MATERIAL_SIGNALS_JSON (concept emphasis; do not mention it):
{_or_none(signals_json)}

EQUATIONS_JSON (per chunk placeholders + LaTeX):
{_or_none(equations_json)}

MUST_CITE_CHUNK_IDS (each must appear at least once in citations):
{format_chunk_id_bullets(must_cite_ids)}

GROUNDING_EXCERPTS (chunk_id lines):
{excerpts}

ALLOWED_CITATION_CHUNK_IDS (use ONLY these):
{format_chunk_id_bullets(allowed_chunk_ids)}

AVAILABLE_MEDIA_ASSETS (ONLY use listed URLs):
{_or_none(assets_json)}

Output:
Return ONLY JSON matching schema."""


def validation_feedback(errors: list[str]) -> str:
    """Suffix appended to the user prompt on retry."""
    if not errors:
        return ""
    return "\n\nVALIDATION_ERRORS_TO_FIX:\n- " + "\n- ".join(errors)


# =============================================================================
# Node Doc Polish
# =============================================================================

NODE_DOC_POLISH_SYSTEM_PROMPT = """MODE: NODE_DOC_POLISH
ROLE: Lesson doc editor.
TASK: Rewrite leftover planning or scaffolding language into plain learner-facing prose.
RULES:
- Keep every block id, the block order and every block type exactly as given.
- Leave citations, URLs, code, diagram.source and table rows/columns untouched.
- Edit only learner-facing text fields; keep their meaning.
- Do not add or remove blocks.
OUTPUT: Return ONLY valid JSON matching the node_doc_v1 schema."""


def build_polish_user_prompt(doc: dict[str, Any], style_json: str = "", narrative_json: str = "") -> str:
    return f"""NODE_DOC_JSON:
{json.dumps(doc, ensure_ascii=False)}

STYLE_JSON (optional):
{_or_none(style_json)}

NARRATIVE_JSON (optional):
{_or_none(narrative_json)}

Return the edited doc, or the input unchanged when nothing needs fixing.
Return ONLY JSON."""


# =============================================================================
# Runtime Plan
# =============================================================================

RUNTIME_PLAN_SCHEMA_NAME = "runtime_plan_v1"

RUNTIME_PLAN_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "path": {"type": "object"},
        "modules": {"type": "array", "items": {"type": "object"}},
        "lessons": {"type": "array", "items": {"type": "object"}},
    },
    "required": ["path"],
}

RUNTIME_PLAN_SYSTEM_PROMPT = """MODE: RUNTIME_PLAN

You plan study cadence for a learning path: session length, breaks, when to surface
quick checks and flashcards.
RULES:
- Base every number on PATH_SUMMARY_JSON and USER_STATS_JSON.
- Keep sessions between 8 and 90 minutes and breaks between 1 and 20 minutes.
- "path" holds the path-wide policy; provide one "modules" entry per module (by module_index)
  and one "lessons" entry per lesson (by node_id).
- policy_profile is one of: balanced, gentle, intensive, review.
- objective_weights has mastery, retention, pace and fatigue weights summing to 1.
OUTPUT: Return ONLY JSON matching the runtime_plan_v1 schema."""


def build_runtime_plan_user_prompt(path_summary: dict[str, Any], user_stats: dict[str, Any], heuristic: dict[str, Any]) -> str:
    return f"""PATH_SUMMARY_JSON:
{json.dumps(path_summary, ensure_ascii=False, sort_keys=True)}

USER_STATS_JSON:
{json.dumps(user_stats, ensure_ascii=False, sort_keys=True)}

BASELINE_PLAN_JSON (adjust where the stats justify it):
{json.dumps(heuristic, ensure_ascii=False, sort_keys=True)}

Return ONLY JSON."""


# =============================================================================
# Media
# =============================================================================

FIGURE_PROMPT_SUFFIX = (
    " Clean educational illustration, no text or labels inside the image, neutral background."
)
VIDEO_PROMPT_SUFFIX = " Short educational clip, steady camera, no on-screen text."


def figure_prompt(plan: dict[str, Any]) -> str:
    base = str(plan.get("prompt") or plan.get("caption") or "").strip()
    return (base + FIGURE_PROMPT_SUFFIX).strip()


def video_prompt(plan: dict[str, Any]) -> str:
    base = str(plan.get("prompt") or plan.get("caption") or "").strip()
    return (base + VIDEO_PROMPT_SUFFIX).strip()
