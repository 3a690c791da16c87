"""
Tests for EnhancementOrchestrator: routing, prompt selection, cloud
fallback and learned corrections.
"""

import dataclasses
import threading
import time
from pathlib import Path
from unittest.mock import Mock

import pytest


def snapshot(**overrides):
    from scribeloop.config import Config

    base = Config(Path("/nonexistent/scribeloop")).snapshot()
    return dataclasses.replace(base, **overrides)


def cloud_snapshot(**overrides):
    values = dict(llm_enabled=True, llm_provider="claude")
    values.update(overrides)
    return snapshot(**values)


def keyed_secrets(provider="claude"):
    from scribeloop.secrets import MemorySecretStore, api_key_name

    return MemorySecretStore({api_key_name(provider): b"sk-test"})


def fake_factory(reply="Hi Sam,\n\nThanks for the update.\n\nBest,\nAnna"):
    client = Mock()
    client.complete.return_value = reply
    return Mock(return_value=client), client


class TestPrompts:

    def test_blank_custom_prompt_uses_default(self):
        from scribeloop.enhance import build_prompt, DEFAULT_PROMPTS
        from scribeloop.types import DocumentType

        prompt, source = build_prompt("hello sam", DocumentType.EMAIL, {"email": "  "})

        assert source == "default"
        assert prompt == DEFAULT_PROMPTS[DocumentType.EMAIL].replace("{{TEXT}}", "hello sam")

    def test_custom_prompt(self):
        from scribeloop.enhance import build_prompt
        from scribeloop.types import DocumentType

        prompt, source = build_prompt("hey", DocumentType.MESSAGE, {"message": "Make it fun: {{TEXT}}"})
        assert (prompt, source) == ("Make it fun: hey", "custom")

        prompt, _ = build_prompt("hey", DocumentType.MESSAGE, {"message": "Make it fun."})
        assert prompt == "Make it fun.\n\nhey"

    def test_every_type_has_a_default(self):
        from scribeloop.enhance import DEFAULT_PROMPTS
        from scribeloop.types import DocumentType

        for document_type in DocumentType:
            assert "{{TEXT}}" in DEFAULT_PROMPTS[document_type]


class TestRouting:

    def test_cloud_with_default_prompt(self):
        from scribeloop.enhance import EnhancementOrchestrator, DEFAULT_PROMPTS, SYSTEM_PROMPT
        from scribeloop.types import DocumentType

        factory, client = fake_factory()
        config = cloud_snapshot(custom_prompts={"email": ""})

        with EnhancementOrchestrator(config, keyed_secrets(), client_factory=factory) as orchestrator:
            result = orchestrator.enhance_detailed("hi sam thanks for the update", DocumentType.EMAIL)

        expected_prompt = DEFAULT_PROMPTS[DocumentType.EMAIL].replace("{{TEXT}}", "hi sam thanks for the update")
        client.complete.assert_called_once_with(expected_prompt, SYSTEM_PROMPT)
        factory.assert_called_once_with("claude", "sk-test", model="", timeout=30.0)

        assert result.enhanced_text.startswith("Hi Sam,")
        assert result.decision.used_cloud
        assert result.decision.prompt_source == "default"
        assert not result.decision.fell_back_to_default
        assert result.applied_rules == ["cloud:claude"]

    def test_no_key_stays_local(self):
        from scribeloop.enhance import EnhancementOrchestrator
        from scribeloop.secrets import MemorySecretStore
        from scribeloop.types import DocumentType

        factory, client = fake_factory()
        with EnhancementOrchestrator(cloud_snapshot(), MemorySecretStore(), client_factory=factory) as orchestrator:
            result = orchestrator.enhance_detailed("um thanks for the update", DocumentType.EMAIL)

        factory.assert_not_called()
        assert result.enhanced_text == "Thanks for the update."
        assert not result.decision.used_cloud
        assert not result.decision.fell_back_to_default

    @pytest.mark.parametrize("secrets_file", ["unreadable", "not_utf8"])
    def test_unreadable_key_file_stays_local(self, tmp_path, secrets_file):
        from scribeloop.enhance import EnhancementOrchestrator
        from scribeloop.secrets import EnvFileSecretStore
        from scribeloop.types import DocumentType

        env_file = tmp_path / ".env"
        if secrets_file == "unreadable":
            env_file.mkdir()  # open() raises IsADirectoryError
        else:
            env_file.write_bytes(b"API_KEY_CLAUDE=\xff\xfe\n")
        secrets = EnvFileSecretStore(env_file, environ={})

        factory, client = fake_factory()
        with EnhancementOrchestrator(cloud_snapshot(), secrets, client_factory=factory) as orchestrator:
            assert not orchestrator.should_use_cloud(DocumentType.EMAIL)
            result = orchestrator.enhance_detailed("um thanks for the update", DocumentType.EMAIL)

        factory.assert_not_called()
        assert result.enhanced_text == "Thanks for the update."
        assert not result.decision.used_cloud

    @pytest.mark.parametrize("document_type", ["search", "unknown"])
    def test_ineligible_types_never_use_cloud(self, document_type):
        from scribeloop.enhance import EnhancementOrchestrator
        from scribeloop.types import DocumentType

        factory, _ = fake_factory()
        with EnhancementOrchestrator(cloud_snapshot(), keyed_secrets(), client_factory=factory) as orchestrator:
            assert not orchestrator.should_use_cloud(DocumentType(document_type))
            orchestrator.enhance("what is the weather in boston", DocumentType(document_type))

        factory.assert_not_called()

    def test_disabled_type_stays_local(self):
        from scribeloop.enhance import EnhancementOrchestrator
        from scribeloop.types import DocumentType

        factory, _ = fake_factory()
        config = cloud_snapshot(cloud_types={"email": False, "message": True})
        with EnhancementOrchestrator(config, keyed_secrets(), client_factory=factory) as orchestrator:
            assert not orchestrator.should_use_cloud(DocumentType.EMAIL)
            assert orchestrator.should_use_cloud(DocumentType.MESSAGE)

    def test_llm_disabled(self):
        from scribeloop.enhance import EnhancementOrchestrator
        from scribeloop.types import DocumentType

        with EnhancementOrchestrator(snapshot(llm_enabled=False), keyed_secrets()) as orchestrator:
            assert not orchestrator.should_use_cloud(DocumentType.EMAIL)

    def test_empty_text(self):
        from scribeloop.enhance import EnhancementOrchestrator
        from scribeloop.types import DocumentType

        metrics = Mock()
        with EnhancementOrchestrator(snapshot(), metrics=metrics) as orchestrator:
            result = orchestrator.enhance_detailed("   ", DocumentType.EMAIL)

        assert result.enhanced_text == "   "
        assert metrics.log.call_args.args[0] == "enhancement"


class TestFallback:

    def test_timeout_returns_local_text(self):
        from scribeloop.enhance import EnhancementOrchestrator
        from scribeloop.types import DocumentType

        release = threading.Event()
        client = Mock()
        client.complete.side_effect = lambda prompt, system: release.wait(5) and "too late"
        factory = Mock(return_value=client)

        orchestrator = EnhancementOrchestrator(
            cloud_snapshot(timeout_seconds=0.001), keyed_secrets(), client_factory=factory,
        )
        try:
            start = time.monotonic()
            result = orchestrator.enhance_detailed("um thanks for the update", DocumentType.EMAIL)
            elapsed = time.monotonic() - start
        finally:
            release.set()
            orchestrator.close()

        assert elapsed < 1.0
        assert result.enhanced_text == "Thanks for the update."
        assert not result.decision.used_cloud
        assert result.decision.fell_back_to_default

    @pytest.mark.parametrize("failure", ["LLMTimeout", "LLMRateLimited", "LLMParseError", "LLMError"])
    def test_cloud_errors_fall_back(self, failure):
        import scribeloop.errors as errors
        from scribeloop.enhance import EnhancementOrchestrator
        from scribeloop.types import DocumentType

        factory, client = fake_factory()
        client.complete.side_effect = getattr(errors, failure)("nope")

        with EnhancementOrchestrator(cloud_snapshot(), keyed_secrets(), client_factory=factory) as orchestrator:
            result = orchestrator.enhance_detailed("um thanks for the update", DocumentType.EMAIL)

        assert result.enhanced_text == "Thanks for the update."
        assert result.decision.fell_back_to_default

    def test_api_status_error_falls_back(self):
        from scribeloop.enhance import EnhancementOrchestrator
        from scribeloop.errors import LLMAPIError
        from scribeloop.types import DocumentType

        factory, client = fake_factory()
        client.complete.side_effect = LLMAPIError(500)

        with EnhancementOrchestrator(cloud_snapshot(), keyed_secrets(), client_factory=factory) as orchestrator:
            assert orchestrator.enhance("um thanks for the update", DocumentType.EMAIL) == "Thanks for the update."

    def test_empty_cloud_reply_falls_back(self):
        from scribeloop.enhance import EnhancementOrchestrator
        from scribeloop.types import DocumentType

        factory, _ = fake_factory(reply="   ")

        with EnhancementOrchestrator(cloud_snapshot(), keyed_secrets(), client_factory=factory) as orchestrator:
            result = orchestrator.enhance_detailed("um thanks for the update", DocumentType.EMAIL)

        assert result.enhanced_text == "Thanks for the update."
        assert result.decision.fell_back_to_default

    def test_client_construction_failure_falls_back(self):
        from scribeloop.enhance import EnhancementOrchestrator
        from scribeloop.errors import LLMError
        from scribeloop.types import DocumentType

        factory = Mock(side_effect=LLMError("Unknown LLM provider"))

        with EnhancementOrchestrator(cloud_snapshot(), keyed_secrets(), client_factory=factory) as orchestrator:
            assert orchestrator.enhance("um thanks for the update", DocumentType.EMAIL) == "Thanks for the update."

    def test_close_releases_client(self):
        from scribeloop.enhance import EnhancementOrchestrator
        from scribeloop.types import DocumentType

        factory, client = fake_factory()
        orchestrator = EnhancementOrchestrator(cloud_snapshot(), keyed_secrets(), client_factory=factory)
        orchestrator.enhance("hello", DocumentType.MESSAGE)
        orchestrator.enhance("hello again", DocumentType.MESSAGE)
        orchestrator.close()

        factory.assert_called_once()
        client.close.assert_called_once()


class TestLearning:

    def test_learned_correction_wins_locally(self):
        from scribeloop.enhance import EnhancementOrchestrator
        from scribeloop.types import DocumentType

        learning = Mock()
        learning.find_similar.return_value = Mock(edited_text="Thanks for your email!")

        with EnhancementOrchestrator(snapshot(), learning=learning) as orchestrator:
            result = orchestrator.enhance_detailed("Thanks For Your Email", DocumentType.EMAIL)

        learning.find_similar.assert_called_once_with("Thanks For Your Email", DocumentType.EMAIL, 0.7)
        assert result.enhanced_text == "Thanks for your email!"
        assert result.applied_rules == ["learned_correction"]
        assert result.learned_pattern_applied

    def test_learned_replacements_after_rules(self):
        from scribeloop.enhance import EnhancementOrchestrator
        from scribeloop.types import DocumentType

        learning = Mock()
        learning.find_similar.return_value = None
        learning.apply_learned.side_effect = lambda text, document_type: text.replace("cafe", "café")

        with EnhancementOrchestrator(snapshot(), learning=learning) as orchestrator:
            result = orchestrator.enhance_detailed("meet at the cafe", DocumentType.MESSAGE)

        assert result.enhanced_text == "meet at the café"
        assert result.applied_rules[-1] == "learned_replacements"
        assert result.learned_pattern_applied

    def test_store_errors_are_ignored(self):
        from scribeloop.enhance import EnhancementOrchestrator
        from scribeloop.errors import LearningStoreError
        from scribeloop.types import DocumentType

        learning = Mock()
        learning.find_similar.side_effect = LearningStoreError("locked")
        learning.apply_learned.side_effect = LearningStoreError("locked")

        with EnhancementOrchestrator(snapshot(), learning=learning) as orchestrator:
            result = orchestrator.enhance_detailed("um thanks for the update", DocumentType.EMAIL)

        assert result.enhanced_text == "Thanks for the update."
        assert not result.learned_pattern_applied

    def test_learning_disabled(self):
        from scribeloop.enhance import EnhancementOrchestrator
        from scribeloop.types import DocumentType

        learning = Mock()
        with EnhancementOrchestrator(snapshot(learning_enabled=False), learning=learning) as orchestrator:
            orchestrator.enhance("thanks for the update", DocumentType.EMAIL)

        learning.find_similar.assert_not_called()
        learning.apply_learned.assert_not_called()

    def test_enhancement_event(self):
        from scribeloop.enhance import EnhancementOrchestrator
        from scribeloop.types import DocumentType

        metrics = Mock()
        with EnhancementOrchestrator(snapshot(), metrics=metrics) as orchestrator:
            orchestrator.enhance("thanks for the update", DocumentType.DOCUMENT)

        event, fields = metrics.log.call_args.args[0], metrics.log.call_args.kwargs
        assert event == "enhancement"
        assert fields["document_type"] == "document"
        assert fields["used_cloud"] is False
        assert fields["learned_pattern_applied"] is False
        assert fields["latency_ms"] >= 0
