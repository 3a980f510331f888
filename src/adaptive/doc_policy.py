"""
Doc Policy - Probe and variant-evaluation knobs.

Read from the environment on every call so operators can tune a running
deployment. Malformed values fall back to the defaults; numbers are clamped
to their documented ranges.
"""
from __future__ import annotations

from dataclasses import dataclass

from src.core.env import env_float, env_int, env_str

DEFAULT_POLICY_VERSION = "doc_policy_v1.0.0"
PROGRAM_PATH_KIND = "program"


@dataclass(frozen=True)
class DocPolicy:
    policy_version: str = DEFAULT_POLICY_VERSION
    lookahead: int = 2
    program_lookahead: int = 3
    prereq_ready_min: float = 0.75
    rate_per_hour: float = 6.0
    max_per_node: int = 2
    max_per_lookahead: int = 4
    min_info_gain: float = 0.05
    testlet_weight: float = 0.25
    misconception_boost: float = 0.3
    prereq_boost: float = 0.35
    variant_eval_min_age_minutes: int = 30
    variant_eval_limit: int = 200

    @classmethod
    def from_env(cls) -> "DocPolicy":
        d = cls()
        # An explicit DOC_LOOKAHEAD overrides both the default and the program lookahead.
        lookahead = env_int("DOC_LOOKAHEAD", -1, lo=0, hi=20) if env_str("DOC_LOOKAHEAD") else -1
        return cls(
            policy_version=env_str("DOC_POLICY_VERSION", d.policy_version) or d.policy_version,
            lookahead=lookahead if lookahead >= 0 else d.lookahead,
            program_lookahead=lookahead if lookahead >= 0 else d.program_lookahead,
            prereq_ready_min=env_float("DOC_PREREQ_READY_MIN", d.prereq_ready_min, lo=0.0, hi=1.0),
            rate_per_hour=env_float("DOC_PROBE_RATE_PER_HOUR", d.rate_per_hour, lo=0.0),
            max_per_node=env_int("DOC_PROBE_MAX_PER_NODE", d.max_per_node, lo=0, hi=20),
            max_per_lookahead=env_int("DOC_PROBE_MAX_PER_LOOKAHEAD", d.max_per_lookahead, lo=0, hi=50),
            min_info_gain=env_float("DOC_PROBE_MIN_INFO_GAIN", d.min_info_gain, lo=0.0, hi=1.0),
            testlet_weight=env_float("DOC_PROBE_TESTLET_WEIGHT", d.testlet_weight, lo=0.0, hi=2.0),
            misconception_boost=env_float("DOC_PROBE_MISCONCEPTION_BOOST", d.misconception_boost, lo=0.0, hi=2.0),
            prereq_boost=env_float("DOC_PROBE_PREREQ_BOOST", d.prereq_boost, lo=0.0, hi=2.0),
            variant_eval_min_age_minutes=env_int(
                "DOC_VARIANT_EVAL_MIN_AGE_MINUTES", d.variant_eval_min_age_minutes, lo=0, hi=10080
            ),
            variant_eval_limit=env_int("DOC_VARIANT_EVAL_LIMIT", d.variant_eval_limit, lo=1, hi=5000),
        )

    def lookahead_for_path_kind(self, path_kind: str | None) -> int:
        if (path_kind or "").strip().lower() == PROGRAM_PATH_KIND:
            return self.program_lookahead
        return self.lookahead
