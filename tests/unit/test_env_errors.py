"""
Tests for environment option parsing and pipeline error helpers.
"""
import pytest

from src.core.env import clamp01, env_bool, env_float, env_int, env_list, env_str, round_half_up
from src.core.errors import (
    ContextLengthExceededError,
    GenerationFailedError,
    NotFoundError,
    PipelineError,
    ValidationFailedError,
    is_context_length_error,
)


class TestEnv:
    def test_env_str(self, monkeypatch):
        monkeypatch.setenv("X_STR", "  value ")
        assert env_str("X_STR") == "value"
        monkeypatch.setenv("X_STR", "   ")
        assert env_str("X_STR", "fallback") == "fallback"
        monkeypatch.delenv("X_STR")
        assert env_str("X_STR", "fallback") == "fallback"

    def test_env_int_clamps_and_falls_back(self, monkeypatch):
        monkeypatch.setenv("X_INT", "500")
        assert env_int("X_INT", 3, lo=1, hi=100) == 100
        monkeypatch.setenv("X_INT", "-2")
        assert env_int("X_INT", 3, lo=1) == 1
        monkeypatch.setenv("X_INT", "2.5")
        assert env_int("X_INT", 3) == 3

    def test_env_float(self, monkeypatch):
        monkeypatch.setenv("X_FLOAT", "0.25")
        assert env_float("X_FLOAT", 1.0) == 0.25
        monkeypatch.setenv("X_FLOAT", "nan")
        assert env_float("X_FLOAT", 1.0) == 1.0
        monkeypatch.setenv("X_FLOAT", "7")
        assert env_float("X_FLOAT", 1.0, lo=0.0, hi=1.0) == 1.0

    @pytest.mark.parametrize(
        "raw,expected",
        [("yes", True), ("ON", True), ("0", False), ("off", False), ("maybe", True)],
    )
    def test_env_bool(self, monkeypatch, raw, expected):
        monkeypatch.setenv("X_BOOL", raw)
        assert env_bool("X_BOOL", True) is expected

    def test_env_list(self, monkeypatch):
        monkeypatch.setenv("X_LIST", "a, b,,c ")
        assert env_list("X_LIST", ["z"]) == ["a", "b", "c"]
        monkeypatch.setenv("X_LIST", " , ")
        assert env_list("X_LIST", ["z"]) == ["z"]

    def test_round_half_up_and_clamp(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(-2.5) == -3
        assert round_half_up(2.4) == 2
        assert clamp01(-1) == 0.0
        assert clamp01(3) == 1.0
        assert clamp01(0.4) == 0.4


class TestErrors:
    def test_kinds_and_default_messages(self):
        assert str(NotFoundError()) == "not_found"
        assert NotFoundError("path missing").kind == "not_found"
        assert isinstance(ContextLengthExceededError(), GenerationFailedError)
        assert isinstance(ValidationFailedError(), PipelineError)

    def test_validation_failed_keeps_errors(self):
        err = ValidationFailedError(errors=["a", "b"])
        assert err.errors == ["a", "b"]
        assert str(err) == "validation failed (2 errors)"

    def test_is_context_length_error(self):
        assert is_context_length_error(ContextLengthExceededError())
        assert is_context_length_error(RuntimeError("This model's Maximum Context Length is 8192"))
        assert not is_context_length_error(RuntimeError("rate limited"))
        assert not is_context_length_error(None)
