"""
Tests for spoken "BV ..." commands: parsing, recipient greetings and
output formats, alone and through the enhancer.
"""

import dataclasses
from datetime import date
from pathlib import Path

import pytest


class TestParse:

    @pytest.mark.parametrize("text", [
        "BV write an email to Sarah. I'll be late tomorrow",
        "Better Voice write an email to Sarah. I'll be late tomorrow",
        "bettervoice, write an email to Sarah. I'll be late tomorrow",
        "bv Write An Email To Sarah! I'll be late tomorrow",
    ])
    def test_email_with_recipient(self, text):
        from scribeloop.commands import parse_voice_command
        from scribeloop.types import DocumentType

        command = parse_voice_command(text)

        assert command.document_type == DocumentType.EMAIL
        assert command.recipient == "Sarah"
        assert command.content == "I'll be late tomorrow"
        assert command.format == "email"

    def test_longest_phrase_wins(self):
        from scribeloop.commands import parse_voice_command
        from scribeloop.types import DocumentType

        command = parse_voice_command("BV send a slack message to the team. standup is moved to ten")

        assert command.document_type == DocumentType.MESSAGE
        assert command.format == "slack_message"
        assert command.instruction == "send a slack message to"
        assert command.recipient == "the team"

    def test_no_sentence_break_means_no_recipient(self):
        from scribeloop.commands import parse_voice_command

        command = parse_voice_command("BV text running five minutes late")

        assert command.recipient is None
        assert command.content == "running five minutes late"

    @pytest.mark.parametrize("text, document_type, fmt", [
        ("BV format as bullet points. eggs. flour", "document", "bullet_points"),
        ("BV create a to-do list: call the bank. pay rent", "document", "todo_list"),
        ("BV write a memo about the offsite", "document", "memo"),
        ("BV draft a tweet shipping day", "social", "tweet"),
        ("BV update linkedin we are hiring", "social", "linkedin"),
        ("BV search for python sqlite wal mode", "search", "search_query"),
    ])
    def test_instruction_table(self, text, document_type, fmt):
        from scribeloop.commands import parse_voice_command
        from scribeloop.types import DocumentType

        command = parse_voice_command(text)

        assert command.document_type == DocumentType(document_type)
        assert command.format == fmt
        assert not command.content.startswith((":", ".", " "))

    def test_tweet_carries_limit(self):
        from scribeloop.commands import parse_voice_command

        assert parse_voice_command("BV write a tweet hello").metadata == {"format": "tweet", "limit": "280"}

    @pytest.mark.parametrize("text", [
        "",
        "write an email to Sarah. hi",
        "BV",
        "BV, ",
        "BV sing a song",
        "BVD write an email to Sarah. hi",
        "BV textbook chapter three",
        "I told the BV team to email me",
    ])
    def test_not_a_command(self, text):
        from scribeloop.commands import parse_voice_command

        assert parse_voice_command(text) is None


class TestFormats:

    def command(self, text):
        from scribeloop.commands import parse_voice_command

        return parse_voice_command(text)

    def test_recipient_greeting_for_email(self):
        from scribeloop.commands import with_recipient_greeting

        command = self.command("BV email Sam. the invoice is attached")

        assert with_recipient_greeting("the invoice is attached", command) == "Hi Sam, the invoice is attached"
        assert with_recipient_greeting("Dear Sam, the invoice", command) == "Dear Sam, the invoice"

    def test_recipient_greeting_skips_other_types(self):
        from scribeloop.commands import recipient_greeting, with_recipient_greeting

        command = self.command("BV write a formal letter to the board. we accept")

        assert command.recipient == "the board"
        assert with_recipient_greeting("we accept", command) == "we accept"
        assert with_recipient_greeting("we accept", None) == "we accept"
        assert recipient_greeting(command) == ""

    def test_bullets_and_todos(self):
        from scribeloop.commands import apply_command_format

        bullets = self.command("BV format as bullet points. x")
        todos = self.command("BV create a todo list. x")

        assert apply_command_format("Eggs. flour! Sugar?", bullets) == "• Eggs\n• Flour\n• Sugar"
        assert apply_command_format("Call the bank. Pay rent.", todos) == "☐ Call the bank\n☐ Pay rent"

    def test_memo_header(self):
        from scribeloop.commands import apply_command_format

        memo = self.command("BV write a memo about x")
        result = apply_command_format("the offsite moves to May.", memo, today=date(2026, 3, 4))

        assert result == "MEMO\nDate: Mar 04, 2026\n\nThe offsite moves to May."

    def test_tweet_is_cut_to_limit(self):
        from scribeloop.commands import apply_command_format

        tweet = self.command("BV draft a tweet x")

        assert apply_command_format("short", tweet) == "short"
        result = apply_command_format("a" * 300, tweet)
        assert len(result) == 280
        assert result.endswith("...")

    def test_linkedin_is_cut_to_150_words(self):
        from scribeloop.commands import apply_command_format

        post = self.command("BV write a linkedin post x")
        result = apply_command_format(" ".join(["word"] * 200), post)

        assert result == " ".join(["word"] * 150) + "..."

    def test_other_formats_pass_through(self):
        from scribeloop.commands import apply_command_format

        assert apply_command_format("Hi Sam,\n\nDone.", self.command("BV email Sam. done")) == "Hi Sam,\n\nDone."
        assert apply_command_format("text", None) == "text"


class TestEnhanceWithCommand:

    def orchestrator(self):
        from scribeloop.config import Config
        from scribeloop.enhance import EnhancementOrchestrator

        config = dataclasses.replace(Config(Path("/nonexistent/scribeloop")).snapshot(), llm_enabled=False)
        return EnhancementOrchestrator(config)

    def test_email_gets_recipient_greeting(self):
        from scribeloop.commands import parse_voice_command

        command = parse_voice_command("BV write an email to Sarah. um I'll be late tomorrow")
        with self.orchestrator() as orchestrator:
            result = orchestrator.enhance_detailed(command.content, command.document_type, command=command)

        assert result.enhanced_text == "Hi Sarah,\n\nI'll be late tomorrow."
        assert result.applied_rules[0] == "voice_command:email"

    def test_bullet_points_after_local_rules(self):
        from scribeloop.commands import parse_voice_command

        command = parse_voice_command("BV format as bullet points. buy milk. call mom")
        with self.orchestrator() as orchestrator:
            result = orchestrator.enhance_detailed(command.content, command.document_type, command=command)

        assert result.enhanced_text == "• Buy milk\n• Call mom"
        assert "command_format" in result.applied_rules

    def test_message_greeting_survives_filler_removal(self):
        from scribeloop.commands import parse_voice_command

        command = parse_voice_command("BV text Mom. um, running late")
        with self.orchestrator() as orchestrator:
            result = orchestrator.enhance_detailed(command.content, command.document_type, command=command)

        assert result.enhanced_text == "Hi Mom, running late"
        assert result.original_text == "um, running late"
        assert "greeting" in result.applied_rules

    def test_spoken_greeting_is_not_doubled(self):
        from scribeloop.commands import parse_voice_command

        command = parse_voice_command("BV email Sam. hello Sam, the report is done")
        with self.orchestrator() as orchestrator:
            result = orchestrator.enhance_detailed(command.content, command.document_type, command=command)

        assert result.enhanced_text == "Hello Sam,\n\nThe report is done."
