"""
Unit tests for the prompt / context-budget manager.
"""

import os

import pytest

from jobsync.core.errors import PromptBudgetError
from jobsync.core.prompt_engine import DEFAULT_PROMPT, PromptManager


class TestPromptText:

    @pytest.fixture(autouse=True)
    def setup(self, tmp_path):
        self.prompt_file = str(tmp_path / "prompt.txt")
        self.prompts = PromptManager({"prompt_file": self.prompt_file})

    def test_default_prompt(self):
        data = self.prompts.get_prompt()
        assert data["prompt"] == DEFAULT_PROMPT
        assert data["is_custom"] is False

    def test_set_prompt_persists(self):
        """A custom prompt survives a restart."""
        result = self.prompts.set_prompt("Classify this email as JSON.")

        assert result["is_custom"] is True
        assert result["token_info"]["status"] == "good"
        assert os.path.exists(self.prompt_file)

        reloaded = PromptManager({"prompt_file": self.prompt_file})
        assert reloaded.get_prompt() == {"prompt": "Classify this email as JSON.", "is_custom": True}

    @pytest.mark.parametrize("bad", ["", "   ", None])
    def test_empty_prompt_rejected(self, bad):
        with pytest.raises(ValueError):
            self.prompts.set_prompt(bad)

    def test_oversized_prompt_rejected(self):
        with pytest.raises(PromptBudgetError):
            self.prompts.set_prompt("x" * 6000)
        assert not os.path.exists(self.prompt_file)
        assert self.prompts.get_prompt()["is_custom"] is False

    def test_reset(self):
        self.prompts.set_prompt("Custom")
        result = self.prompts.reset_prompt()
        assert result == {"prompt": DEFAULT_PROMPT, "is_custom": False}
        assert not os.path.exists(self.prompt_file)

    def test_blank_file_means_default(self, tmp_path):
        path = tmp_path / "blank.txt"
        path.write_text("   \n")
        assert PromptManager({"prompt_file": str(path)}).get_prompt()["is_custom"] is False


class TestTokenInfo:

    def setup_method(self):
        self.prompts = PromptManager({"context_size": 2048, "reserved_output_tokens": 128})

    def test_estimate(self):
        assert self.prompts.estimate_tokens("") == 0
        assert self.prompts.estimate_tokens("abcde") == 2

    def test_good(self):
        info = self.prompts.get_token_info("abcd" * 10)
        assert info.prompt_tokens == 10
        assert info.available_tokens == 2048 - 10 - 128
        assert info.usage_percent == 0.5
        assert info.status == "good"

    def test_warning(self):
        assert self.prompts.get_token_info("x" * 4000).status == "warning"

    def test_danger(self):
        assert self.prompts.get_token_info("x" * 6000).status == "danger"

    def test_default_prompt_fits(self):
        assert self.prompts.get_token_info().status == "good"


class TestRender:

    def test_contains_email_fields(self):
        prompts = PromptManager()
        text = prompts.render("Interview invitation", "hr@acme.test", "Please pick a slot.")

        assert text.startswith(DEFAULT_PROMPT)
        assert "From: hr@acme.test" in text
        assert "Subject: Interview invitation" in text
        assert "Please pick a slot." in text
        assert text.endswith("Output:")

    def test_override_replaces_instructions(self):
        text = PromptManager().render("S", "a@b.c", "B", prompt_override="Just answer.")
        assert text.startswith("Just answer.")
        assert DEFAULT_PROMPT not in text

    def test_body_truncated_to_budget(self):
        """Rendered prompt never exceeds context minus reserved output."""
        prompts = PromptManager({"context_size": 256, "reserved_output_tokens": 128})
        text = prompts.render("Subject", "a@b.c", "y" * 10000, prompt_override="Classify.")

        assert prompts.estimate_tokens(text) <= 256 - 128
        assert "y" * 100 in text

    def test_oversized_template_rejected(self):
        prompts = PromptManager({"context_size": 256})
        with pytest.raises(PromptBudgetError):
            prompts.render("S", "a@b.c", "B", prompt_override="x" * 1000)

    def test_no_room_for_email(self):
        prompts = PromptManager({"context_size": 256, "reserved_output_tokens": 128})
        # 140 tokens: below the template limit, but template + reserve overflow
        with pytest.raises(PromptBudgetError):
            prompts.render("S", "a@b.c", "B", prompt_override="x" * 560)
