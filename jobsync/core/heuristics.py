"""
Keyword heuristics.

Used in two places:
- as the Fast Classifier's probability before a model has been trained
- to fill company / position / status when an email is accepted on the
  Fast Classifier's verdict alone (no Deep extraction), and as review hints
"""

import re
from typing import Dict, Optional

from .models import JobStatus

JOB_KEYWORDS = [
    "interview", "position", "application", "job", "offer", "salary",
    "career", "opportunity", "hiring", "recruitment", "candidate",
    "resume", "cv", "applied", "recruiter", "hr", "human resources",
]

NON_JOB_KEYWORDS = [
    "payment", "invoice", "receipt", "order", "shipping", "delivery",
    "newsletter", "promotion", "sale", "discount", "social", "notification",
]

# Heuristic confidence never reaches the auto-approve band
MAX_HEURISTIC_CONFIDENCE = 0.8

# Sender domains that never name the employer
GENERIC_SENDER_DOMAINS = {
    "indeed", "linkedin", "gmail", "yahoo", "outlook", "hotmail", "icloud",
    "greenhouse", "lever", "workday", "myworkday", "myworkdayjobs", "smartrecruiters",
    "ashbyhq", "icims", "jobvite", "mail", "email", "noreply", "no-reply",
}

_COMPANY_SUBJECT_PATTERNS = [
    re.compile(r"application (?:at|to)\s+(.+?)$", re.IGNORECASE),
    re.compile(r"position at\s+(.+?)$", re.IGNORECASE),
    re.compile(r"interview with\s+(.+?)$", re.IGNORECASE),
    re.compile(r"^(.+?)\s*[-:]\s*(?:job|position|application|interview)", re.IGNORECASE),
]

_COMPANY_BODY_PATTERNS = [
    re.compile(r"thank you for applying to\s+(.+?)\s+for\b", re.IGNORECASE),
    re.compile(r"position at\s+(.+?)[\s.,!]", re.IGNORECASE),
    re.compile(r"join\s+(.+?)\s+as\b", re.IGNORECASE),
    re.compile(r"opportunity at\s+(.+?)[\s.,!]", re.IGNORECASE),
]

_POSITION_SUBJECT_PATTERNS = [
    re.compile(r"application for\s+(?:the\s+)?(.+?)(?:\s+(?:at|with)\s+.+)?$", re.IGNORECASE),
    re.compile(r"re:\s*(.+?)\s*[-–—]\s*application", re.IGNORECASE),
    re.compile(r"position:\s*(.+?)$", re.IGNORECASE),
    re.compile(r"role:\s*(.+?)$", re.IGNORECASE),
]

_POSITION_BODY_PATTERNS = [
    re.compile(r"applying for (?:the\s+)?(.+?)\s+(?:position|role)", re.IGNORECASE),
    re.compile(r"application for (?:the\s+)?(.+?)\s+(?:position|role)", re.IGNORECASE),
    re.compile(r"interested in (?:the\s+)?(.+?)\s+(?:position|role)", re.IGNORECASE),
]

# Checked in order; first match wins
_STATUS_RULES = [
    (JobStatus.OFFER, ("congratulations", "job offer", "pleased to offer", "offer letter")),
    (JobStatus.DECLINED, (
        "unfortunately", "not selected", "decided not to proceed", "other candidates",
        "not moving forward", "position has been filled", "regret to inform",
    )),
    (JobStatus.INTERVIEWED, (
        "interview", "schedule a call", "phone screen", "video call", "meet with",
    )),
]


def _keyword_re(word: str) -> "re.Pattern":
    return re.compile(rf"\b{re.escape(word)}\b", re.IGNORECASE)


_JOB_RES = [_keyword_re(k) for k in JOB_KEYWORDS]
_NON_JOB_RES = [_keyword_re(k) for k in NON_JOB_KEYWORDS]


def keyword_scores(text: str) -> Dict[str, int]:
    text = text or ""
    return {
        "job": sum(1 for r in _JOB_RES if r.search(text)),
        "non_job": sum(1 for r in _NON_JOB_RES if r.search(text)),
    }


def keyword_probability(text: str) -> float:
    """
    P(job-related) from keyword counts.

    The distance from 0.5 grows by 0.1 per keyword of difference and is
    capped, so heuristic verdicts always stay reviewable.
    """
    scores = keyword_scores(text)
    job, non_job = scores["job"], scores["non_job"]
    if job == 0 and non_job == 0:
        return 0.5
    confidence = min(MAX_HEURISTIC_CONFIDENCE, 0.5 + abs(job - non_job) * 0.1)
    return confidence if job > non_job else 1.0 - confidence


def clean_position_title(position: str) -> Optional[str]:
    if not position:
        return None
    cleaned = position.strip()
    # Job codes and requisition ids
    cleaned = re.sub(r"\b[A-Z]_?\d{4,}\b", "", cleaned)
    cleaned = re.sub(r"\b[A-Z]{2,}\d{4,}\b", "", cleaned)
    cleaned = re.sub(r"-\d{6,}$", "", cleaned)
    cleaned = re.sub(r"\(\d+\)$", "", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned)
    cleaned = cleaned.strip(" -")
    return cleaned if len(cleaned) > 1 else None


def guess_company(sender: str, subject: str, body: str) -> Optional[str]:
    domain = re.search(r"@([^.>\s]+)\.", sender or "")
    if domain:
        name = domain.group(1)
        if name.lower() not in GENERIC_SENDER_DOMAINS:
            return name[:1].upper() + name[1:]

    for pattern in _COMPANY_SUBJECT_PATTERNS:
        match = pattern.search(subject or "")
        if match:
            company = match.group(1).strip().rstrip(".!")
            if 1 < len(company) < 50:
                return company

    for pattern in _COMPANY_BODY_PATTERNS:
        match = pattern.search(body or "")
        if match:
            company = match.group(1).strip()
            if 1 < len(company) < 50:
                return company
    return None


def guess_position(subject: str, body: str) -> Optional[str]:
    for pattern in _POSITION_SUBJECT_PATTERNS:
        match = pattern.search(subject or "")
        if match and 2 < len(match.group(1).strip()) < 100:
            return clean_position_title(match.group(1))

    for pattern in _POSITION_BODY_PATTERNS:
        match = pattern.search(body or "")
        if match and 2 < len(match.group(1).strip()) < 100:
            return clean_position_title(match.group(1))
    return None


def guess_status(text: str) -> JobStatus:
    """Lifecycle status from phrases; job-related mail defaults to Applied."""
    lowered = (text or "").lower()
    for status, phrases in _STATUS_RULES:
        if any(p in lowered for p in phrases):
            return status
    return JobStatus.APPLIED
