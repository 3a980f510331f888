"""
Structural minima for node docs, per node kind and doc template.

Each (node_kind, doc_template) pair resolves to a NodeDocRequirements. The
"concept" template is the default lesson shape; premium quality modes
lengthen lessons and ask for a visual on narrative templates.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

NODE_KINDS = ("module", "lesson", "capstone", "review")
DOC_TEMPLATES = ("overview", "concept", "practice", "cheatsheet", "project", "review")
PREMIUM_QUALITY_MODES = ("premium", "openai", "high")


@dataclass(frozen=True)
class NodeDocRequirements:
    min_word_count: int = 1100
    min_headings: int = 3
    min_paragraphs: int = 8
    min_callouts: int = 2
    min_quick_checks: int = 3
    min_flashcards: int = 1
    min_diagrams: int = 0
    min_tables: int = 0
    min_why_it_matters: int = 1
    min_intuition: int = 1
    min_mental_models: int = 1
    min_pitfalls: int = 1  # misconceptions + common_mistakes
    min_steps: int = 0
    min_checklist: int = 0
    min_connections: int = 0
    require_media: bool = False
    require_example: bool = True


# Overrides applied on top of the "concept" defaults.
_TEMPLATE_OVERRIDES: dict[str, dict[str, int]] = {
    "overview": dict(
        min_word_count=900, min_headings=2, min_paragraphs=6, min_callouts=1, min_quick_checks=2
    ),
    "concept": {},
    "practice": dict(
        min_word_count=1300, min_headings=3, min_paragraphs=7, min_callouts=3, min_quick_checks=4
    ),
    "cheatsheet": dict(
        min_word_count=900,
        min_headings=2,
        min_paragraphs=3,
        min_callouts=1,
        min_quick_checks=2,
        min_tables=1,
    ),
    "project": dict(
        min_word_count=1600,
        min_headings=3,
        min_paragraphs=8,
        min_callouts=2,
        min_quick_checks=2,
        min_steps=1,
        min_checklist=1,
    ),
    "review": dict(
        min_word_count=1000, min_headings=2, min_paragraphs=4, min_callouts=1, min_quick_checks=6
    ),
}


def normalize_node_kind(raw: str | None) -> str:
    s = (raw or "").strip().lower()
    return s if s in NODE_KINDS else "lesson"


def normalize_doc_template(raw: str | None, node_kind: str | None) -> str:
    s = (raw or "").strip().lower()
    if s in DOC_TEMPLATES:
        return s
    kind = normalize_node_kind(node_kind)
    if kind == "module":
        return "overview"
    if kind == "capstone":
        return "project"
    if kind == "review":
        return "review"
    return "concept"


def is_premium_quality(quality_mode: str | None) -> bool:
    return (quality_mode or "").strip().lower() in PREMIUM_QUALITY_MODES


def requirements_for_template(
    node_kind: str | None,
    doc_template: str | None,
    quality_mode: str | None = "standard",
) -> NodeDocRequirements:
    """
    Resolve the minima for a node.

    Args:
        node_kind: PathNode kind (module, lesson, capstone, review)
        doc_template: Template name from node metadata; inferred from kind when blank
        quality_mode: ``premium|openai|high`` raises the bar

    Returns:
        NodeDocRequirements
    """
    tmpl = normalize_doc_template(doc_template, node_kind)
    req = replace(NodeDocRequirements(), **_TEMPLATE_OVERRIDES[tmpl])

    if not is_premium_quality(quality_mode):
        return req

    changes: dict[str, int] = {"min_word_count": int(req.min_word_count * 1.35)}
    if req.min_paragraphs > 0:
        changes["min_paragraphs"] = req.min_paragraphs + 2
    callouts = req.min_callouts + 1 if req.min_callouts > 0 else req.min_callouts
    quick_checks = req.min_quick_checks
    if tmpl == "practice":
        quick_checks += 2
        callouts += 1
    changes["min_callouts"] = callouts
    changes["min_quick_checks"] = quick_checks
    if tmpl in ("concept", "overview") and req.min_diagrams < 1:
        changes["min_diagrams"] = 1
    return replace(req, **changes)


def template_requirement_line(doc_template: str | None, diagrams_disabled: bool = False) -> str:
    """Extra prompt instruction for templates with a distinctive shape."""
    tmpl = normalize_doc_template(doc_template, "lesson")
    if tmpl == "cheatsheet":
        return "- Include at least 1 table block that summarizes key definitions, formulas, or patterns."
    if tmpl == "practice":
        return (
            "- Include at least 2 worked examples (at least one as the tip callout titled "
            'exactly "Worked example").'
        )
    if tmpl == "project":
        return "- Include a simple rubric/checklist (table preferred) that the learner can use to self-evaluate."
    if tmpl == "review":
        if diagrams_disabled:
            return "- Prefer tables/bullets over diagrams for recap; focus on quick checks."
        return "- Prefer recap tables/bullets; include diagrams only if they add real value."
    return ""


_SUGGESTED_OUTLINES: dict[str, list[str]] = {
    "overview": [
        "Open with a why_it_matters block tying this module to the learner's goal.",
        "Give the big picture in an intuition block and a way of thinking in a mental_model block.",
        "Map what the lessons in this module cover as bullets.",
        "Define key terms and prerequisites at a high level.",
        'Include a tip callout titled exactly "Worked example" with a small motivating example.',
        "Close with common misconceptions and how the module addresses them.",
    ],
    "practice": [
        "Open with why_it_matters and a short recap of the core idea and when it applies.",
        'Work 2-4 examples of rising difficulty; one is the "Worked example" tip callout.',
        "Cover common traps and how to debug them.",
        "Close with a compact checklist for new problems, plus a few quick checks.",
    ],
    "cheatsheet": [
        "Open with tight definitions and a mental_model block for recognizing the pattern.",
        "Summarize the key rules, formulas or patterns in a table.",
        'Show the table in action in one "Worked example" tip callout.',
        "Close with gotchas and edge cases.",
    ],
    "project": [
        "State the deliverable and its constraints.",
        "Explain why the project is worth doing (why_it_matters) and how the pieces fit (mental_model).",
        "List prerequisites and the concepts the project integrates.",
        "Lay out a step-by-step build plan with checkpoints.",
        'Walk a representative slice end-to-end in a "Worked example" tip callout.',
        "Close with a rubric or checklist and common failure modes.",
    ],
    "review": [
        "Recap the core ideas in one or two short sections; add an intuition block if it aids memory.",
        "Include a short misconceptions or common mistakes section.",
        "Use many quick checks throughout to reinforce memory.",
        'Include a compact "Worked example" tip callout.',
    ],
    "concept": [
        "Open with why_it_matters, intuition and mental_model blocks, short and vivid.",
        "Define key terms and connect them to the learner's goal.",
        "Explain the main mechanism step by step.",
        'Include a tip callout titled exactly "Worked example".',
        "Close with common misconceptions and their corrections.",
    ],
}


def suggested_outline(node_kind: str | None, doc_template: str | None) -> str:
    tmpl = normalize_doc_template(doc_template, node_kind)
    lines = _SUGGESTED_OUTLINES[tmpl] + ["Spread quick checks throughout the doc, not all at the end."]
    return "\n".join(f"- {line}" for line in lines)
