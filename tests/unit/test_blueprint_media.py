"""
Tests for doc blueprints and media de-duplication.
"""
from src.content.blueprint import DocBlueprint, sync_objectives, validate_doc_against_blueprint
from src.content.media import MediaAsset, dedupe_node_doc_media, node_doc_media_urls

CHUNK_A = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"
CHUNK_B = "bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb"


def make_blueprint(**overrides):
    raw = {
        "path_id": "path-1",
        "path_node_id": "node-1",
        "objectives": ["Explain DNS caching"],
        "required_concept_keys": ["dns", "ttl"],
        "required_claims": [{"claim_id": "c1", "citation_ids": [CHUNK_B]}],
        "constraints": {
            "min_quick_checks": 2,
            "required_block_kinds": ["pitfalls", "table"],
            "forbidden_phrases": ["obviously"],
        },
    }
    raw.update(overrides)
    return DocBlueprint.from_dict(raw)


class TestBlueprint:
    def doc(self):
        return {
            "schema_version": 1,
            "concept_keys": ["DNS"],
            "blocks": [
                {"type": "heading", "text": "Resolvers"},
                {
                    "type": "paragraph",
                    "md": "Obviously resolvers cache answers.",
                    "citations": [{"chunk_id": CHUNK_A}],
                },
                {"type": "quick_check", "prompt_md": "Why cache?", "answer_md": "Speed."},
            ],
        }

    def test_violation_codes(self):
        report = validate_doc_against_blueprint(self.doc(), make_blueprint())
        assert not report.passed
        assert report.codes() == [
            "min_quick_checks",
            "required_block_kind",
            "required_block_kind",
            "missing_required_concept",
            "missing_required_claim",
            "missing_objective",
            "forbidden_phrase",
        ]

    def test_satisfied_blueprint_passes(self):
        bp = make_blueprint(
            objectives=["resolvers cache"],
            required_concept_keys=["dns"],
            required_claims=[{"claim_id": "c1", "citation_ids": [CHUNK_A]}],
            constraints={"min_quick_checks": 1, "max_quick_checks": 3},
        )
        report = validate_doc_against_blueprint(self.doc(), bp)
        assert report.passed
        assert report.violations == []

    def test_blueprint_without_ids_is_invalid(self):
        bp = DocBlueprint.from_dict({})
        report = validate_doc_against_blueprint(self.doc(), bp)
        assert "blueprint_invalid" in report.codes()

    def test_sync_objectives_inserts_after_heading(self):
        bp = make_blueprint()
        out, added, changed = sync_objectives(self.doc(), bp)
        assert changed
        assert added == ["Explain DNS caching"]
        assert out["blocks"][1] == {"type": "objectives", "title": "Objectives", "items_md": ["Explain DNS caching"]}
        assert "missing_objective" not in validate_doc_against_blueprint(out, bp).codes()

        _, added, changed = sync_objectives(out, bp)
        assert added == []
        assert not changed

    def test_sync_objectives_extends_existing_block(self):
        doc = {"blocks": [{"type": "objectives", "items_md": ["Define TTL"]}]}
        out, added, _ = sync_objectives(doc, make_blueprint())
        assert out["blocks"][0]["items_md"] == ["Define TTL", "Explain DNS caching"]
        assert added == ["Explain DNS caching"]


class TestMediaDedupe:
    def assets(self):
        return [
            MediaAsset(kind="image", url="https://cdn/u1.png", key="k1"),
            MediaAsset(kind="image", url="https://cdn/u2.png", key="k2", mime_type="image/png"),
            MediaAsset(kind="video", url="https://cdn/v1.mp4"),
            MediaAsset(kind="audio", url="https://cdn/a.mp3"),
        ]

    def test_dedupes_within_doc(self):
        doc = {
            "blocks": [
                {"type": "figure", "asset": {"url": "https://cdn/u1.png"}},
                {"type": "figure", "asset": {"url": "https://cdn/u1.png"}},
                {"type": "figure", "asset": {"storage_key": "k1"}},
                {"type": "video"},
                {"type": "paragraph", "md": "text"},
            ]
        }
        used = set()
        out, counters = dedupe_node_doc_media(doc, self.assets(), used)
        assert counters == {
            "figure_replaced": 1,
            "figure_dropped_missing_url": 1,
            "video_filled_missing_url": 1,
        }
        assert [b["type"] for b in out["blocks"]] == ["figure", "figure", "video", "paragraph"]
        assert out["blocks"][1]["asset"]["url"] == "https://cdn/u2.png"
        assert out["blocks"][1]["asset"]["mime_type"] == "image/png"
        assert out["blocks"][2]["url"] == "https://cdn/v1.mp4"
        assert used == {"https://cdn/u1.png", "https://cdn/u2.png", "https://cdn/v1.mp4"}
        assert node_doc_media_urls(out) == ["https://cdn/u1.png", "https://cdn/u2.png", "https://cdn/v1.mp4"]

    def test_global_usage_blocks_reuse(self):
        used = {"https://cdn/u1.png", "https://cdn/u2.png"}
        doc = {"blocks": [{"type": "figure", "asset": {"url": "https://cdn/u1.png"}}]}
        out, counters = dedupe_node_doc_media(doc, self.assets(), used)
        assert out["blocks"] == []
        assert counters == {"figure_dropped": 1}

    def test_fill_by_storage_key(self):
        doc = {"blocks": [{"type": "figure", "asset": {"storage_key": "K2"}}]}
        out, counters = dedupe_node_doc_media(doc, self.assets())
        assert out["blocks"][0]["asset"]["url"] == "https://cdn/u2.png"
        assert counters == {"figure_filled_missing_url": 1}
