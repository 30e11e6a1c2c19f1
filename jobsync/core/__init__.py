"""
Core modules for the JobSync pipeline.

- orchestrator: Sync coordinator (fetch -> filter -> classify -> persist)
- accounts: Account registry and watermarks
- fetcher: Paged retrieval through a MailTransport
- digest_filter: Rule-based newsletter/digest pre-filter
- fast_classifier: Local TF-IDF + random forest relevance model
- deep_classifier: Generative structured extraction
- prompt_engine: Instruction template and context budget
- circuit_breaker: Fault isolation around the Deep Classifier
- confidence: Band table and routing
- review_queue: Human-in-the-loop verdicts
- feedback_loop: Verdicts as training samples

Modules that depend on storage or providers (accounts, deep_classifier,
review_queue, orchestrator) are imported from their own module.
"""

from .circuit_breaker import CircuitBreaker, get_circuit_breaker, reset_circuit_breaker
from .confidence import ConfidenceRouter
from .digest_filter import DigestFilter
from .events import EventBus
from .fast_classifier import FastClassifier
from .feedback_loop import FeedbackLoop
from .prompt_engine import PromptManager

__all__ = [
    "CircuitBreaker",
    "get_circuit_breaker",
    "reset_circuit_breaker",
    "ConfidenceRouter",
    "DigestFilter",
    "EventBus",
    "FastClassifier",
    "FeedbackLoop",
    "PromptManager",
]
