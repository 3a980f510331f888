"""
Tests for the deterministic doc clean-up and repair passes.

Every pass must leave its input untouched and converge on a second run.
"""
import copy

from src.content.autofix import (
    ensure_diagram,
    ensure_minima,
    ensure_quick_checks_after_teaching,
    ensure_threading_references,
    inject_missing_must_cite,
)
from src.content.canonical import content_hash
from src.content.requirements import requirements_for_template
from src.content.sanitize import (
    cap_block_type,
    dedupe_node_doc,
    extract_and_sanitize_svg,
    prune_meta_blocks,
    sanitize_citations,
    sanitize_diagrams,
    scrub_meta_text,
    scrub_node_doc,
    split_mermaid_source_and_caption,
)
from src.content.validate import quick_check_order_errors, validate_node_doc

CHUNK_A = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"
CHUNK_B = "bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb"
CHUNK_TEXT = {CHUNK_A: "Routers forward packets between networks.", CHUNK_B: "Switches forward frames."}


def cite(cid):
    return [{"chunk_id": cid, "quote": "", "loc": {"page": 0, "start": 0, "end": 0}}]


class TestScrub:
    def test_scrub_meta_text(self):
        assert scrub_meta_text("Here's the plan: learn TCP.") == ("overview: learn TCP.", ["here's the plan"])
        assert scrub_meta_text("Pick one: A or B") == ("A or B", ["pick one"])
        assert scrub_meta_text("Nothing to change.") == ("Nothing to change.", [])

    def test_scrub_node_doc_leaves_code(self):
        doc = {
            "title": "Before we dive in: DNS",
            "blocks": [
                {"type": "paragraph", "md": "Here is the plan for DNS."},
                {"type": "code", "code": "# before we dive in"},
                {"type": "checklist", "items_md": ["Answer these questions"]},
            ],
        }
        original = copy.deepcopy(doc)
        out, hits = scrub_node_doc(doc)
        assert doc == original
        assert out["title"] == ": DNS"
        assert out["blocks"][0]["md"] == "overview for DNS."
        assert out["blocks"][1]["code"] == "# before we dive in"
        assert out["blocks"][2]["items_md"] == ["questions"]
        assert set(hits) == {"before we dive in", "here is the plan", "answer these"}

    def test_prune_meta_blocks(self):
        doc = {
            "blocks": [
                {"type": "heading", "text": "Entry check"},
                {"type": "paragraph", "md": "Tell me your current level."},
                {"type": "paragraph", "md": "DNS maps names to addresses."},
            ]
        }
        out, reasons = prune_meta_blocks(doc)
        assert reasons == ["meta_heading", "meta_paragraph"]
        assert [b["md"] for b in out["blocks"]] == ["DNS maps names to addresses."]

        again, reasons = prune_meta_blocks(out)
        assert reasons == []
        assert again == out


class TestDedupe:
    def test_removes_repeats_and_summary_restatement(self):
        doc = {
            "summary": "TCP is reliable.",
            "blocks": [
                {"type": "heading", "level": 2, "text": "Intro"},
                {"type": "heading", "level": 2, "text": "intro"},
                {"type": "paragraph", "md": "tcp  is reliable."},
                {"type": "paragraph", "md": "Same text."},
                {"type": "paragraph", "md": "same   text."},
            ],
        }
        out, reasons = dedupe_node_doc(doc)
        assert reasons == ["duplicate_heading", "summary_dup_paragraph", "duplicate_paragraph"]
        assert [b["type"] for b in out["blocks"]] == ["heading", "paragraph"]

    def test_no_change_returns_empty_reasons(self):
        doc = {"blocks": [{"type": "paragraph", "md": "One."}, {"type": "paragraph", "md": "Two."}]}
        out, reasons = dedupe_node_doc(doc)
        assert reasons == []
        assert out["blocks"] == doc["blocks"]


class TestDiagrams:
    def test_mermaid_caption_split(self):
        raw = "```mermaid\nflowchart LR\n  A-->B\nThe client sends a request to the server.\n```"
        source, caption = split_mermaid_source_and_caption(raw)
        assert source == "flowchart LR\n  A-->B"
        assert caption == "The client sends a request to the server."

    def test_svg_is_stripped_of_scripts_and_handlers(self):
        raw = "Here: <svg onload=\"x()\"><script>alert(1)</script><rect onclick='y'/></svg> trailing"
        assert extract_and_sanitize_svg(raw) == "<svg><rect/></svg>"

    def test_sanitize_diagrams_infers_kind(self):
        doc = {"blocks": [{"type": "diagram", "source": "<svg><script>x</script></svg>"}]}
        out, changed = sanitize_diagrams(doc)
        assert changed
        assert out["blocks"][0]["kind"] == "svg"
        assert out["blocks"][0]["source"] == "<svg></svg>"

    def test_cap_block_type(self):
        doc = {"blocks": [{"type": "diagram"}, {"type": "paragraph"}, {"type": "diagram"}]}
        assert [b["type"] for b in cap_block_type(doc, "diagram", 1)["blocks"]] == ["diagram", "paragraph"]
        assert len(cap_block_type(doc, "diagram", -1)["blocks"]) == 3
        assert [b["type"] for b in cap_block_type(doc, "diagram", 0)["blocks"]] == ["paragraph"]


class TestSanitizeCitations:
    def test_filters_and_repairs(self):
        doc = {
            "blocks": [
                {"type": "heading", "text": "H"},
                {
                    "type": "paragraph",
                    "md": "p",
                    "citations": [
                        "not-a-dict",
                        {"chunk_id": CHUNK_A.upper(), "quote": "q" * 300, "loc": {"page": -1, "start": 5, "end": 2}},
                        {"chunk_id": CHUNK_A},
                        {"chunk_id": CHUNK_B},
                        {"chunk_id": "bad"},
                    ],
                },
                {"type": "callout", "md": "c"},
            ]
        }
        out, stats, changed = sanitize_citations(doc, {CHUNK_A}, CHUNK_TEXT)
        assert changed
        para = out["blocks"][1]["citations"]
        assert para == [{"chunk_id": CHUNK_A, "quote": "q" * 240, "loc": {"page": 0, "start": 0, "end": 0}}]
        assert stats.citations_dropped == 4
        assert stats.chunk_ids_normalized == 1
        assert stats.quotes_truncated == 1
        assert stats.loc_repaired == 2
        assert stats.blocks_touched == 2

        callout = out["blocks"][2]["citations"]
        assert callout[0]["chunk_id"] == CHUNK_A
        assert callout[0]["quote"] == CHUNK_TEXT[CHUNK_A]
        assert stats.blocks_backfilled == 1
        assert "citations" not in out["blocks"][0]


    def test_drops_citations_on_uncited_block_types(self):
        stray = "cccccccc-cccc-cccc-cccc-cccccccccccc"
        doc = {
            "blocks": [
                {"type": "heading", "text": "H", "citations": cite(stray)},
                {"type": "code", "code": "x = 1", "citations": cite(CHUNK_A) + cite(stray)},
                {"type": "divider", "citations": "junk"},
                {"type": "paragraph", "md": "p", "citations": cite(CHUNK_A)},
            ]
        }
        out, stats, changed = sanitize_citations(doc, {CHUNK_A, CHUNK_B}, CHUNK_TEXT)
        assert changed
        assert all("citations" not in b for b in out["blocks"][:3])
        assert stats.citations_dropped == 4
        assert stats.blocks_touched == 1
        cited = {c["chunk_id"] for b in out["blocks"] for c in b.get("citations") or []}
        assert cited <= {CHUNK_A, CHUNK_B}
    def test_idempotent(self):
        doc = {"blocks": [{"type": "paragraph", "md": "p", "citations": cite(CHUNK_A)}]}
        first, _, _ = sanitize_citations(doc, {CHUNK_A}, CHUNK_TEXT)
        second, _, changed = sanitize_citations(first, {CHUNK_A}, CHUNK_TEXT)
        assert not changed
        assert first == second


class TestEnsureMinima:
    def base_doc(self):
        return {
            "schema_version": 1,
            "title": "Packet routing",
            "concept_keys": ["routing"],
            "blocks": [{"type": "paragraph", "md": "Routers forward packets.", "citations": cite(CHUNK_A)}],
        }

    def test_padded_doc_validates(self):
        req = requirements_for_template("lesson", "", "standard")
        out, changed = ensure_minima(self.base_doc(), req, {CHUNK_A}, CHUNK_TEXT, [CHUNK_A])
        assert changed
        errs, metrics = validate_node_doc(out, {CHUNK_A}, req)
        assert errs == []
        assert metrics["word_count"] >= req.min_word_count
        assert quick_check_order_errors(out) == []

    def test_converges(self):
        req = requirements_for_template("lesson", "", "standard")
        first, _ = ensure_minima(self.base_doc(), req, {CHUNK_A}, CHUNK_TEXT, [CHUNK_A])
        second, changed = ensure_minima(first, req, {CHUNK_A}, CHUNK_TEXT, [CHUNK_A])
        assert not changed
        assert first == second


class TestQuickCheckOrdering:
    def test_moves_check_after_teaching(self):
        doc = {
            "blocks": [
                {"id": "q", "type": "quick_check", "citations": cite(CHUNK_A)},
                {"id": "p", "type": "paragraph", "md": "x", "citations": cite(CHUNK_A)},
            ]
        }
        out, stats, changed = ensure_quick_checks_after_teaching(doc, CHUNK_TEXT)
        assert changed
        assert [b["id"] for b in out["blocks"]] == ["p", "q"]
        assert stats.quick_checks_reordered == 1
        assert stats.pending_quick_checks_resolved == 1

    def test_inserts_excerpt_for_untaught_chunks(self):
        doc = {"blocks": [{"id": "q", "type": "quick_check", "citations": cite(CHUNK_B)}]}
        out, stats, _ = ensure_quick_checks_after_teaching(doc, CHUNK_TEXT)
        excerpt, check = out["blocks"]
        assert excerpt["id"].startswith("context_")
        assert "> Switches forward frames." in excerpt["md"]
        assert [c["chunk_id"] for c in excerpt["citations"]] == [CHUNK_B]
        assert check["id"] == "q"
        assert stats.context_paragraphs_inserted == 1
        assert quick_check_order_errors(out) == []


class TestInjections:
    def test_inject_missing_must_cite_skips_quick_checks(self):
        doc = {
            "blocks": [
                {"type": "quick_check", "citations": cite(CHUNK_A)},
                {"type": "heading", "text": "H"},
                {"type": "paragraph", "md": "p", "citations": cite(CHUNK_A)},
            ]
        }
        out, injected = inject_missing_must_cite(doc, [CHUNK_B, CHUNK_A], CHUNK_TEXT, {CHUNK_B: 3})
        assert injected == [CHUNK_B]
        para = out["blocks"][2]["citations"]
        assert [c["chunk_id"] for c in para] == [CHUNK_A, CHUNK_B]
        assert para[1]["loc"]["page"] == 3
        assert out["blocks"][0]["citations"] == cite(CHUNK_A)

    def test_ensure_diagram(self):
        doc = {"concept_keys": ["dns_lookup"], "blocks": [{"type": "paragraph", "md": "p"}, {"type": "faq"}]}
        out, changed = ensure_diagram(doc, {CHUNK_A})
        assert changed
        assert out["blocks"][1]["type"] == "diagram"
        assert out["blocks"][1]["source"].startswith("<svg")
        assert out["blocks"][1]["citations"][0]["chunk_id"] == CHUNK_A
        _, changed = ensure_diagram(out, {CHUNK_A})
        assert not changed

    def test_threading_references(self):
        doc = {
            "title": "Routing",
            "blocks": [
                {"type": "paragraph", "md": "Routing basics."},
                {"type": "key_takeaways", "items_md": ["x"]},
            ],
        }
        out, changed = ensure_threading_references(
            doc, prev_title="Addressing", next_title="Switching", allowed={CHUNK_A}
        )
        assert changed
        thread = out["blocks"][1]
        assert thread["id"].startswith("thread_")
        assert '"Addressing"' in thread["md"]
        assert '"Switching"' in thread["md"]
        assert out["blocks"][2]["type"] == "key_takeaways"
        _, changed = ensure_threading_references(out, prev_title="Addressing", next_title="Switching")
        assert not changed

    def test_inserted_blocks_get_repeatable_ids(self):
        doc = {
            "title": "Routing",
            "concept_keys": ["next_hop"],
            "blocks": [
                {"id": "q", "type": "quick_check", "citations": cite(CHUNK_B)},
                {"id": "p", "type": "paragraph", "md": "Routing basics."},
            ],
        }

        def repair(d):
            d, _, _ = ensure_quick_checks_after_teaching(d, CHUNK_TEXT)
            d, _ = ensure_diagram(d, {CHUNK_A})
            d, _ = ensure_threading_references(d, prev_title="Addressing", allowed={CHUNK_A})
            return d

        first, second = repair(doc), repair(copy.deepcopy(doc))
        assert [b["id"] for b in first["blocks"]] == [b["id"] for b in second["blocks"]]
        assert content_hash(first) == content_hash(second)
        ids = [b["id"] for b in first["blocks"]]
        assert len(set(ids)) == len(ids)
