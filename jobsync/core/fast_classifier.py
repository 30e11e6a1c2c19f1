"""
Fast Classifier: local, low-latency job-relatedness model.

TF-IDF (top 1000 terms) + RandomForest, trained on human-labelled samples
collected by the feedback loop and persisted with joblib. Until enough
samples exist, keyword heuristics provide the probability; those never reach
the auto-approve band, so an untrained classifier defers to the Deep
Classifier or to review.
"""

import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

import joblib
from sklearn.ensemble import RandomForestClassifier
from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.model_selection import train_test_split
from sklearn.pipeline import Pipeline

from .heuristics import keyword_probability
from .models import utcnow

logger = logging.getLogger(__name__)

Sample = Tuple[str, bool]


@dataclass(frozen=True)
class FastVerdict:
    is_job_related: bool
    probability: float  # P(job-related)
    confidence: float   # max(p, 1 - p)
    method: str         # "model" or "heuristic"


def _build_pipeline(random_state: int = 42) -> Pipeline:
    return Pipeline([
        ("tfidf", TfidfVectorizer(
            max_features=1000,
            lowercase=True,
            stop_words="english",
            ngram_range=(1, 2),
        )),
        ("forest", RandomForestClassifier(
            n_estimators=100,
            max_depth=10,
            random_state=random_state,
        )),
    ])


class FastClassifier:
    """
    Usage:
        fast = FastClassifier(config)
        verdict = fast.classify("Interview invitation ...")
        fast.add_sample("Your order has shipped", False)
    """

    def __init__(self, config: Optional[Dict] = None):
        config = config or {}
        self.model_file = config.get("model_file")
        self.min_samples = config.get("min_samples", 10)
        self.retrain_every = config.get("retrain_every", 25)

        self._pipeline: Optional[Pipeline] = None
        self._samples: List[Sample] = []
        self._new_since_training = 0
        self._accuracy: Optional[float] = None
        self._last_trained: Optional[datetime] = None
        self._lock = threading.RLock()

        if self.model_file:
            self._load()

    @property
    def is_trained(self) -> bool:
        return self._pipeline is not None

    def classify(self, text: str) -> FastVerdict:
        with self._lock:
            pipeline = self._pipeline

        if pipeline is None:
            probability = keyword_probability(text)
            method = "heuristic"
        else:
            probability = self._job_probability(pipeline, text or "")
            method = "model"

        return FastVerdict(
            is_job_related=probability >= 0.5,
            probability=probability,
            confidence=max(probability, 1.0 - probability),
            method=method,
        )

    @staticmethod
    def _job_probability(pipeline: Pipeline, text: str) -> float:
        proba = pipeline.predict_proba([text])[0]
        classes = list(pipeline.classes_)
        if 1 not in classes:
            return 0.0
        return float(proba[classes.index(1)])

    def load_samples(self, samples: Sequence[Sample]) -> None:
        """Replace the labelled sample set without training."""
        with self._lock:
            self._samples = [(t, bool(label)) for t, label in samples]

    def add_sample(self, text: str, is_job_related: bool) -> bool:
        """
        Add one labelled sample. Retrains once `retrain_every` new samples
        have accumulated. Returns True if a retrain happened.
        """
        with self._lock:
            self._samples.append((text, bool(is_job_related)))
            self._new_since_training += 1
            due = self.retrain_every and self._new_since_training >= self.retrain_every

        if due:
            return self.retrain()
        return False

    def retrain(self) -> bool:
        with self._lock:
            samples = list(self._samples)
        return self.train(samples)

    def train(self, samples: Sequence[Sample]) -> bool:
        """
        Fit on `samples`, reporting accuracy on an 80/20 split.

        Returns False (model unchanged) when there are fewer than
        `min_samples` samples or only one class.
        """
        texts = [t for t, _ in samples]
        labels = [1 if label else 0 for _, label in samples]

        if len(samples) < self.min_samples:
            logger.info(
                f"Not enough samples to train ({len(samples)}/{self.min_samples})"
            )
            return False
        if len(set(labels)) < 2:
            logger.info("Training needs both job and non-job samples")
            return False

        stratify = labels if min(labels.count(0), labels.count(1)) >= 2 else None
        x_train, x_test, y_train, y_test = train_test_split(
            texts, labels, test_size=0.2, random_state=42, stratify=stratify
        )

        pipeline = _build_pipeline()
        pipeline.fit(x_train, y_train)
        accuracy = float(pipeline.score(x_test, y_test))

        # Deploy a model fitted on everything
        final = _build_pipeline()
        final.fit(texts, labels)

        with self._lock:
            self._pipeline = final
            self._samples = list(samples)
            self._accuracy = accuracy
            self._last_trained = utcnow()
            self._new_since_training = 0

        logger.info(f"Fast classifier trained on {len(samples)} samples, accuracy {accuracy:.2%}")
        self._save()
        return True

    def get_stats(self) -> Dict:
        with self._lock:
            job = sum(1 for _, label in self._samples if label)
            vocabulary = 0
            if self._pipeline is not None:
                vocabulary = len(self._pipeline.named_steps["tfidf"].vocabulary_)
            return {
                "trained": self.is_trained,
                "total_samples": len(self._samples),
                "job_samples": job,
                "non_job_samples": len(self._samples) - job,
                "accuracy": self._accuracy,
                "last_trained": self._last_trained.isoformat() if self._last_trained else None,
                "vocabulary_size": vocabulary,
                "method": "model" if self.is_trained else "heuristic",
            }

    def _save(self) -> None:
        if not self.model_file:
            return
        try:
            os.makedirs(os.path.dirname(os.path.abspath(self.model_file)), exist_ok=True)
            with self._lock:
                joblib.dump(
                    {
                        "pipeline": self._pipeline,
                        "accuracy": self._accuracy,
                        "last_trained": self._last_trained,
                    },
                    self.model_file,
                )
            logger.debug(f"Fast classifier saved to {self.model_file}")
        except OSError as e:
            logger.error(f"Failed to save fast classifier: {e}")

    def _load(self) -> None:
        if not os.path.exists(self.model_file):
            return
        try:
            data = joblib.load(self.model_file)
            self._pipeline = data.get("pipeline")
            self._accuracy = data.get("accuracy")
            self._last_trained = data.get("last_trained")
            logger.info(f"Fast classifier loaded from {self.model_file}")
        except Exception as e:
            logger.warning(f"Could not load fast classifier model: {e}")
