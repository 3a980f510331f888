"""Minimal SVG rendering for auto-generated concept flow diagrams."""

from __future__ import annotations

from xml.sax.saxutils import escape

from .docutil import dedupe_strings

WIDTH = 900
HEIGHT = 240
MARGIN = 24
GAP = 22
BOX_HEIGHT = 86

_STYLE = """
<style>
.box{fill:#f7f7fb;stroke:#2b2b2b;stroke-width:2;rx:14;}
.t{font-family:Arial, Helvetica, sans-serif;font-size:16px;fill:#111;}
.arrow{stroke:#111;stroke-width:2.5;marker-end:url(#m);}
</style>
<defs>
<marker id="m" markerWidth="10" markerHeight="10" refX="8" refY="3" orient="auto">
<path d="M0,0 L9,3 L0,6 Z" fill="#111"/>
</marker>
</defs>
"""


def escape_xml(s: str) -> str:
    return escape(s, {'"': "&quot;", "'": "&apos;"})


def build_simple_flow_svg(labels: list[str]) -> str:
    """
    Render up to four labeled boxes joined left-to-right by arrows.

    Returns:
        SVG markup, or "" when there is nothing to draw
    """
    labels = dedupe_strings(labels)[:4]
    if not labels:
        return ""
    n = len(labels)
    inner_w = WIDTH - MARGIN * 2 - GAP * (n - 1)
    if inner_w < 120:
        return ""
    box_w = inner_w // n
    y = (HEIGHT - BOX_HEIGHT) // 2

    parts = [
        f'<svg xmlns="http://www.w3.org/2000/svg" width="{WIDTH}" height="{HEIGHT}" '
        f'viewBox="0 0 {WIDTH} {HEIGHT}">',
        _STYLE,
    ]
    for i, raw in enumerate(labels):
        x = MARGIN + i * (box_w + GAP)
        parts.append(f'<rect class="box" x="{x}" y="{y}" width="{box_w}" height="{BOX_HEIGHT}"/>')
        parts.append(
            f'<text class="t" x="{x + box_w // 2}" y="{y + BOX_HEIGHT // 2 + 6}" '
            f'text-anchor="middle">{escape_xml(raw.strip())}</text>'
        )
        if i < n - 1:
            ay = y + BOX_HEIGHT // 2
            parts.append(
                f'<line class="arrow" x1="{x + box_w}" y1="{ay}" x2="{x + box_w + GAP - 6}" y2="{ay}"/>'
            )
    parts.append("</svg>")
    return "".join(parts)
