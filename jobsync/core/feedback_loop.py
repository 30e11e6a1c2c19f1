"""
Feedback loop: human verdicts become Fast Classifier training samples.

Review verdicts and explicit corrections are stored locally (sanitized,
truncated), forwarded to the Fast Classifier and can be exported as JSONL.
"""

import json
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Tuple

from ..utils.sanitize import sanitize_body, sanitize_subject
from .fast_classifier import FastClassifier

logger = logging.getLogger(__name__)


@dataclass
class TrainingSample:
    """A single human-labelled email."""

    message_id: str
    subject: str  # Sanitized
    body: str  # Sanitized, truncated
    is_job_related: bool  # Human label
    predicted: Optional[bool]
    confidence: float
    source: str  # "review" | "correction"
    timestamp: float

    @property
    def is_correction(self) -> bool:
        return self.predicted is not None and self.predicted != self.is_job_related

    @property
    def text(self) -> str:
        return f"{self.subject}\n{self.body}"


class FeedbackLoop:
    """
    Usage:
        loop = FeedbackLoop(config["feedback"], fast_classifier)
        loop.submit({"message_id": "m1", "subject": "...", "body": "...",
                     "is_job_related": True, "predicted": False, "confidence": 0.6})
    """

    def __init__(self, config: Optional[Dict] = None, fast_classifier: Optional[FastClassifier] = None):
        """
        Args:
            config: Configuration with:
                - data_file: Path to the JSON sample file (None = memory only)
                - max_entries: Maximum samples kept (default: 10000)
                - body_chars: Body truncation (default: 1500)
            fast_classifier: receives every accepted sample
        """
        config = config or {}
        self.data_file = config.get("data_file")
        self.max_entries = config.get("max_entries", 10000)
        self.body_chars = config.get("body_chars", 1500)
        self.fast_classifier = fast_classifier

        self._samples: List[TrainingSample] = []
        self._lock = threading.Lock()
        self._load_data()

        if self.fast_classifier is not None:
            self.fast_classifier.load_samples(self.labelled_texts())

    def submit(self, correction: Dict) -> TrainingSample:
        """
        Record a human verdict.

        Args:
            correction: dict with message_id, subject, body, is_job_related and
                optionally predicted, confidence, source

        Raises:
            ValueError: missing label
        """
        if "is_job_related" not in correction:
            raise ValueError("Correction needs an 'is_job_related' label")

        predicted = correction.get("predicted")
        sample = TrainingSample(
            message_id=str(correction.get("message_id", "")),
            subject=sanitize_subject(correction.get("subject", "")),
            body=sanitize_body(correction.get("body", ""), self.body_chars),
            is_job_related=bool(correction["is_job_related"]),
            predicted=None if predicted is None else bool(predicted),
            confidence=float(correction.get("confidence", 1.0)),
            source=correction.get("source", "correction"),
            timestamp=time.time(),
        )

        with self._lock:
            self._samples.append(sample)
            if len(self._samples) > self.max_entries:
                self._samples = self._samples[-self.max_entries:]
            self._save_data()

        logger.debug(
            f"Feedback for {sample.message_id}: job={sample.is_job_related} "
            f"(correction: {sample.is_correction})"
        )

        if self.fast_classifier is not None:
            self.fast_classifier.add_sample(sample.text, sample.is_job_related)
        return sample

    def labelled_texts(self) -> List[Tuple[str, bool]]:
        with self._lock:
            return [(s.text, s.is_job_related) for s in self._samples]

    def get_stats(self) -> Dict:
        with self._lock:
            total = len(self._samples)
            corrections = sum(1 for s in self._samples if s.is_correction)
            job = sum(1 for s in self._samples if s.is_job_related)
            return {
                "total_entries": total,
                "job_samples": job,
                "non_job_samples": total - job,
                "corrections": corrections,
                "confirmations": total - corrections,
            }

    def export_training_data(self, output_file: Optional[str] = None) -> Optional[str]:
        """
        Export samples as JSONL ({"text", "label", "source"} per line).

        Returns the file path, or None when there is nothing to export.
        """
        with self._lock:
            samples = list(self._samples)
        if not samples:
            logger.warning("No feedback samples to export")
            return None

        if output_file is None:
            base_dir = os.path.dirname(self.data_file) if self.data_file else os.getcwd()
            output_file = os.path.join(base_dir, f"training_data_{int(time.time())}.jsonl")

        os.makedirs(os.path.dirname(os.path.abspath(output_file)), exist_ok=True)
        with open(output_file, "w", encoding="utf-8") as f:
            for s in samples:
                f.write(json.dumps({
                    "text": s.text,
                    "label": "job_related" if s.is_job_related else "not_job_related",
                    "source": s.source,
                }) + "\n")

        logger.info(f"Exported {len(samples)} training examples to {output_file}")
        return output_file

    def clear(self) -> None:
        """Delete every stored sample (memory and file)."""
        with self._lock:
            self._samples.clear()
            if self.data_file and os.path.exists(self.data_file):
                os.remove(self.data_file)
        if self.fast_classifier is not None:
            self.fast_classifier.load_samples([])
        logger.info("Feedback data cleared")

    def _load_data(self) -> None:
        if not self.data_file or not os.path.exists(self.data_file):
            return
        try:
            with open(self.data_file, "r", encoding="utf-8") as f:
                data = json.load(f)
            self._samples = [TrainingSample(**e) for e in data.get("samples", [])]
            logger.debug(f"Loaded {len(self._samples)} feedback samples")
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Failed to load feedback data: {e}")

    def _save_data(self) -> None:
        if not self.data_file:
            return
        try:
            os.makedirs(os.path.dirname(os.path.abspath(self.data_file)), exist_ok=True)
            with open(self.data_file, "w", encoding="utf-8") as f:
                json.dump({"samples": [asdict(s) for s in self._samples]}, f)
        except OSError as e:
            logger.warning(f"Failed to save feedback data: {e}")
