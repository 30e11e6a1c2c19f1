"""
Prompt / budget manager for the Deep Classifier.

The instruction template (task description + few-shot examples + rules) can
be customised by the user and is persisted to a file. Before any call the
template is measured against the model's context window so an oversized
payload is rejected locally instead of failing remotely.
"""

import logging
import math
import os
import threading
from dataclasses import asdict, dataclass
from typing import Dict, Optional

from jinja2 import BaseLoader, Environment

from .errors import PromptBudgetError

logger = logging.getLogger(__name__)

DEFAULT_PROMPT = """You are a job application email classifier. Analyze the email and return ONLY a JSON object with exactly these keys: "is_job_related", "company", "position", "status".

Examples of correct classification:

Email: "From: noreply@myworkday.com
Subject: Your one-time passcode
Your one-time passcode: 123456"
Output: {"is_job_related":true,"company":null,"position":null,"status":null}

Email: "From: careers@acme.com
Subject: Application Received - Senior Data Analyst
Thank you for applying to the Senior Data Analyst position at Acme Corp."
Output: {"is_job_related":true,"company":"Acme","position":"Senior Data Analyst","status":"Applied"}

Email: "From: hr@initech.com
Subject: Your Application Status
We regret to inform you that we will not be moving forward with your candidacy."
Output: {"is_job_related":true,"company":"Initech","position":null,"status":"Declined"}

Email: "From: deals@shop.example.com
Subject: 20% off this weekend
Our biggest sale of the season starts now."
Output: {"is_job_related":false,"company":null,"position":null,"status":null}

Classification rules:
- Job-related: applications, interviews, offers, rejections, ATS emails (Workday, Greenhouse, Lever, HackerRank, Codility)
- Not job-related: newsletters, job-board digests, marketing, social media, receipts

Status priority (rejection overrides application):
- Declined: "regret", "unfortunately", "not selected", "not moving forward", "pursue other"
- Offer: "offer", "compensation", "pleased to offer"
- Interviewed: "interview", "schedule", "assessment", "coding challenge"
- Applied: "application received", "thank you for applying", "under review"

Company: clean legal suffixes ("Google Inc." -> "Google"); null if unknown.
Position: drop requisition codes ("R123 Data Analyst" -> "Data Analyst"); null if unknown.
Status must be one of Applied, Interviewed, Offer, Declined, or null."""

EMAIL_TEMPLATE = """{{ instructions }}

Email: "From: {{ sender }}
Subject: {{ subject }}
{{ body }}"
Output:"""


@dataclass(frozen=True)
class TokenInfo:
    prompt_tokens: int
    context_size: int
    available_tokens: int
    usage_percent: float
    status: str  # good | warning | danger

    def to_dict(self) -> Dict:
        return asdict(self)


class PromptManager:
    """
    Owns the instruction template and the context-window budget.

    Usage:
        prompts = PromptManager(config["prompt"])
        info = prompts.get_token_info()
        text = prompts.render(subject, sender, body)
    """

    def __init__(self, config: Optional[Dict] = None):
        config = config or {}
        self.context_size = config.get("context_size", 2048)
        self.max_template_fraction = config.get("max_template_fraction", 0.6)
        self.warning_fraction = config.get("warning_fraction", 0.45)
        self.reserved_output_tokens = config.get("reserved_output_tokens", 128)
        self.chars_per_token = config.get("chars_per_token", 4)
        self.prompt_file = config.get("prompt_file")

        self._env = Environment(
            loader=BaseLoader(),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self._email_template = self._env.from_string(EMAIL_TEMPLATE)
        self._lock = threading.Lock()
        self._custom: Optional[str] = self._read_custom()

    def _read_custom(self) -> Optional[str]:
        if not self.prompt_file or not os.path.exists(self.prompt_file):
            return None
        try:
            with open(self.prompt_file, "r", encoding="utf-8") as f:
                text = f.read()
            return text if text.strip() else None
        except OSError as e:
            logger.warning(f"Could not read custom prompt: {e}")
            return None

    # Prompt text

    @property
    def current_prompt(self) -> str:
        with self._lock:
            return self._custom or DEFAULT_PROMPT

    def get_prompt(self) -> Dict:
        with self._lock:
            return {"prompt": self._custom or DEFAULT_PROMPT, "is_custom": self._custom is not None}

    def set_prompt(self, text: str) -> Dict:
        """
        Replace the instruction template.

        Raises:
            ValueError: empty prompt
            PromptBudgetError: prompt alone exceeds the template budget
        """
        if not text or not isinstance(text, str) or not text.strip():
            raise ValueError("Prompt must be a non-empty string")

        info = self.get_token_info(text)
        if info.status == "danger":
            raise PromptBudgetError(
                f"Prompt uses {info.usage_percent:.0f}% of the context window "
                f"(max {self.max_template_fraction:.0%})"
            )

        with self._lock:
            if self.prompt_file:
                os.makedirs(os.path.dirname(os.path.abspath(self.prompt_file)), exist_ok=True)
                with open(self.prompt_file, "w", encoding="utf-8") as f:
                    f.write(text)
            self._custom = text
        logger.info(f"Custom prompt saved ({info.prompt_tokens} tokens)")
        return {"prompt": text, "is_custom": True, "token_info": info.to_dict()}

    def reset_prompt(self) -> Dict:
        with self._lock:
            if self.prompt_file and os.path.exists(self.prompt_file):
                os.remove(self.prompt_file)
            self._custom = None
        logger.info("Prompt reset to default")
        return {"prompt": DEFAULT_PROMPT, "is_custom": False}

    # Budget

    def estimate_tokens(self, text: str) -> int:
        if not text:
            return 0
        return int(math.ceil(len(text) / self.chars_per_token))

    def get_token_info(self, prompt_text: Optional[str] = None) -> TokenInfo:
        """Budget report for `prompt_text` (the current prompt when omitted)."""
        text = prompt_text if prompt_text is not None else self.current_prompt
        tokens = self.estimate_tokens(text)
        fraction = tokens / self.context_size if self.context_size else 1.0

        if fraction <= self.warning_fraction:
            status = "good"
        elif fraction <= self.max_template_fraction:
            status = "warning"
        else:
            status = "danger"

        return TokenInfo(
            prompt_tokens=tokens,
            context_size=self.context_size,
            available_tokens=max(0, self.context_size - tokens - self.reserved_output_tokens),
            usage_percent=round(fraction * 100, 1),
            status=status,
        )

    # Rendering

    def render(
        self,
        subject: str,
        sender: str,
        body: str,
        prompt_override: Optional[str] = None,
    ) -> str:
        """
        Full prompt for one email; the body is truncated to what the budget leaves.

        Raises:
            PromptBudgetError: the template leaves no room for the email
        """
        instructions = prompt_override or self.current_prompt
        info = self.get_token_info(instructions)
        if info.status == "danger":
            raise PromptBudgetError(
                f"Instruction template uses {info.usage_percent:.0f}% of the context window"
            )

        skeleton = self._email_template.render(
            instructions=instructions, sender=sender, subject=subject, body=""
        )
        remaining = self.context_size - self.estimate_tokens(skeleton) - self.reserved_output_tokens
        if remaining <= 0:
            raise PromptBudgetError("No context left for the email body")

        max_chars = int(remaining * self.chars_per_token)
        if len(body) > max_chars:
            logger.debug(f"Body truncated from {len(body)} to {max_chars} chars")
            body = body[:max_chars]

        return self._email_template.render(
            instructions=instructions, sender=sender, subject=subject, body=body
        )
