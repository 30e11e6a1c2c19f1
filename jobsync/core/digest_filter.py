"""
Digest filter: rule-based pre-pass run before any classifier.

Drops job-board digests, newsletters, profile-view notices and other bulk
mail so they never cost a classification. Genuine application mail always
wins over digest signals (whitelist first).

Rule order:
1. Known always-digest senders
2. Application whitelist (subject/body phrases)
3. Newsletter platforms
4. Mixed job-board domains (LinkedIn, Indeed, Glassdoor): subject decides
5. Pure digest domains
6. Digest subject patterns
7. Digest body patterns (at least BODY_MATCH_THRESHOLD matches)
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple

from .models import RawEmail

logger = logging.getLogger(__name__)

BODY_MATCH_THRESHOLD = 2
BODY_SCAN_CHARS = 2000

# Senders that are never application mail
ALWAYS_DIGEST_SENDERS = (
    "notifications-noreply@linkedin.com",
    "donotreply@match.indeed.com",
)

# Job boards and newsletter domains that only send digests
DIGEST_DOMAINS = {
    "monster.com",
    "ziprecruiter.com",
    "careerbuilder.com",
    "dice.com",
    "angel.co",
    "angellist.com",
    "hired.com",
    "jobs.stackoverflow.com",
    "stackoverflow.email",
    "remoteok.io",
    "weworkremotely.com",
    "flexjobs.com",
    "themuse.com",
    "idealist.org",
    "usajobs.gov",
    "simplyhired.com",
    "snagajob.com",
    "jobs.github.com",
    "builtin.com",
    "venturebeat.com",
    "tldrnewsletter.com",
    "match.indeed.com",
}

# Specific alert addresses on otherwise mixed domains
DIGEST_ADDRESSES = {
    "jobalerts-noreply@linkedin.com",
    "messages-noreply@linkedin.com",
    "notifications-noreply@linkedin.com",
    "donotreply@match.indeed.com",
}

# Send both digests and real application mail; content decides
MIXED_DOMAINS = {"linkedin.com", "indeed.com", "glassdoor.com"}

NEWSLETTER_PLATFORMS = {
    "substack.com",
    "beehiiv.com",
    "convertkit.com",
    "mailchimp.com",
    "sendgrid.net",
    "ccsend.com",
    "klaviyo.com",
    "getresponse.com",
    "constantcontact.com",
}

DIGEST_SUBJECT_PATTERNS = [
    # Bulk job listings
    r"^\d+ (new )?jobs?",
    r"new jobs(?! (at|with) (the|my|our|your))",
    r"and \d+ more (new )?jobs?",
    r"new positions",
    r"new openings",
    r"available positions",
    r"open positions",
    r"job openings",
    r"recommended jobs?",
    r"jobs? (you might|you may) (like|be interested)",
    r"jobs? that match",
    r"jobs? matching your",
    r"jobs? based on your",
    r"similar jobs?",
    r"jobs? alerts?",
    r"job digest",
    r"weekly jobs?",
    r"daily jobs?",
    r"jobs? newsletter",
    r"jobs? roundup",
    r"latest jobs?",
    r"(new|available) opportunities",
    r"career opportunities",
    # Newsletters
    r"newsletter",
    r"(weekly|daily|monthly) digest",
    r"career insights?",
    r"career (tips|advice|growth|hacks)",
    r"job search (tips|advice|strategies)",
    r"\d+x (career|growth|results)",
    r"salary negotiation",
    r"what (this|it) means for you",
    # Marketing
    r"unlock your",
    r"boost your",
    r"stand out to",
    r"don.?t miss (this|out)",
    r"last chance",
    r"limited time",
    r"register (now|today) for",
    r"employers are (looking|searching)",
    r"(companies|.+) (are|is) hiring",
    r"is looking for",
    r"is growing their team",
    r"join (our|their) team",
    r"hired roles near you",
    r"companies? hired (for |roles)",
    r"still looking for",
    r"\d+ companies",
    # Profile visibility
    r"profile.?views?",
    r"who.?s viewed your",
    r"people are viewing",
    r"you appeared in \d+ search",
    r"your profile appeared",
    r"job alert:",
    r"connections? at",
    # Social notifications
    r"added \d+ comments?",
    r"commented on your",
    # Location-based listings
    r"new jobs? in",
    r"jobs? near",
    r"jobs? within \d+ miles",
    # Reviews, webinars
    r"salary insights?",
    r"company reviews?",
    r"employer ratings?",
    r"join us for .+ webinar",
    r"admissions (webinar|event)",
    r"become an? instructor",
    # Job board listing formats
    r'^".+":.+-',
    r'^".+" at .+, .+, and ',
    r"^apply now to",
    r"apply now to .+ at",
    r"see jobs at",
    r"explore opportunities at",
    r"check out (these |the )?jobs",
    r"view jobs at",
    r"\d+ more new jobs?",
    r"you have an? invitation",
    r"invitation (from|to connect)",
]

DIGEST_BODY_PATTERNS = [
    r"view all jobs?",
    r"see more jobs?",
    r"browse (more|all)",
    r"explore (opportunities|jobs)",
    r"view \d+ (more|similar)",
    r"unsubscribe from",
    r"manage (your )?(job |email )?alerts?",
    r"update your preferences",
    r"email preferences",
    r"(job )?recommendations based on",
    r"we found \d+ (jobs?|opportunities)",
    r"here are (some |the )?(latest |new )?jobs?",
    r"check out these",
    r"top picks for",
    r"curated (for you|based on)",
    r"personalized (recommendations|jobs)",
    r"matches your (profile|skills|experience)",
    r"visit our (website|job board)",
    r"search for more",
    r"discover more opportunities",
    r"manage your (subscription|preferences)",
    r"sent (via|using|by) (substack|beehiiv|convertkit)",
    r"view (this )?(email )?in (your )?browser",
    r"forward this (email|newsletter)",
    r"why did (i|you) (get|receive) this",
]

# Strong application signals in the subject alone
STRONG_SUBJECT_PATTERNS = [
    r"your application",
    r"application (to|for|at)",
    r"application was",
    r"application has been",
    r"thank you for (your )?(application|applying|interest)",
    r"regarding your (application|candidacy)",
    r"interview",
    r"(job |employment )?offer",
    r"next steps",
    r"assessment",
    r"coding challenge",
]

APPLICATION_PATTERNS = [
    # Confirmations
    r"your application (was |has been )?sent",
    r"application (was |has been )?(sent|submitted|received)",
    r"thank you for (your )?application",
    r"thank you for applying",
    r"thank you for your interest",
    r"we (have )?received your (application|resume|submission)",
    r"successfully applied",
    r"application (is |has been )?complete",
    # Status updates
    r"application status",
    r"status of your application",
    r"your application to",
    r"application was (viewed|reviewed)",
    r"application updates?",
    r"reviewed your (application|resume|profile)",
    r"regarding your application",
    r"about your application",
    # Interviews
    r"schedule.{0,20}interview",
    r"interview (invitation|request|confirmation)",
    r"(?<!interviews )interview with",
    r"interviewing for",
    r"invite you to interview",
    r"confirm your interview",
    r"\byour interview\b",
    r"\bphone interview\b",
    r"\btechnical interview\b",
    r"\bfinal interview\b",
    # Offers, next steps
    r"offer letter",
    r"job offer",
    r"employment offer",
    r"next steps",
    r"moving forward with",
    r"proceed with your",
    r"advanced to the next",
    # Assessments
    r"assessment",
    r"coding challenge",
    r"technical (assessment|challenge|test)",
    r"take.?home",
    r"complete the.{0,20}(assessment|test|challenge)",
    # Rejections
    r"unfortunately",
    r"regret to inform",
    r"(not|won.?t) (be )?(selected|moving forward|proceeding)",
    r"position has been filled",
    r"no longer (available|hiring)",
    r"decided to (move|go|proceed)",
    r"other candidate",
]

# Subject phrases that are never filtered, whatever the sender
NEVER_FILTER_SUBJECT_PHRASES = (
    "your application",
    "application to",
    "application was",
    "application has",
    "application status",
    "application update",
    "interview",
    "offer letter",
    "thank you for applying",
    "thank you for your interest",
    "we received your",
    "we have received",
    "regarding your application",
    "next steps",
    "assessment",
    "coding challenge",
    "technical assessment",
    "take-home",
    "background check",
    "reference check",
)

# Applicant tracking systems mentioned in genuine application mail
ATS_PATTERNS = [
    r"greenhouse",
    r"lever",
    r"workday",
    r"taleo",
    r"icims",
    r"jobvite",
    r"bamboohr",
    r"smartrecruiters",
    r"ashbyhq",
    r"breezy",
    r"bullhorn",
    r"recruitee",
    r"jazz",
    r"applicantpro",
    r"zoho recruit",
]


def _compile(patterns: Iterable[str]) -> List["re.Pattern"]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


_ADDRESS_RE = re.compile(r"<([^>]+)>|([^<>\s]+@[^<>\s]+)")


@dataclass(frozen=True)
class DigestVerdict:
    is_digest: bool
    reason: str
    confidence: float


class DigestFilter:
    """
    Separates bulk/newsletter mail from candidate application mail.

    Usage:
        digest_filter = DigestFilter()
        kept, dropped = digest_filter.split(emails)
    """

    def __init__(self):
        self._subject_patterns = _compile(DIGEST_SUBJECT_PATTERNS)
        self._body_patterns = _compile(DIGEST_BODY_PATTERNS)
        self._strong_subject = _compile(STRONG_SUBJECT_PATTERNS)
        self._application = _compile(APPLICATION_PATTERNS)
        self._ats = _compile(ATS_PATTERNS)

    def detect(self, email: RawEmail) -> DigestVerdict:
        return self.check(email.subject or "", email.sender or "", email.body or "")

    def check(self, subject: str, sender: str, body: str) -> DigestVerdict:
        sender_lower = sender.lower()
        for address in ALWAYS_DIGEST_SENDERS:
            if address in sender_lower:
                return DigestVerdict(True, f"digest_domain:{address}", 0.99)

        # Whitelist must run before any domain rule
        if self.is_application_email(subject, body):
            return DigestVerdict(False, "application_email", 1.0)

        subject_lower = subject.lower()
        for phrase in NEVER_FILTER_SUBJECT_PHRASES:
            if phrase in subject_lower:
                return DigestVerdict(False, "application_keyword_in_subject", 1.0)

        domain = self.extract_domain(sender)

        if self.is_newsletter_platform(domain) and not self.has_application_signals(subject, body):
            return DigestVerdict(True, "newsletter_platform", 0.95)

        if self.is_mixed_domain(domain):
            if self._matches_subject(subject) and not self.has_application_signals(subject, body):
                return DigestVerdict(True, "mixed_domain_digest_pattern", 0.85)

        if self.is_digest_domain(domain):
            if self.has_application_signals(subject, body):
                return DigestVerdict(False, "application_email_from_job_board", 1.0)
            return DigestVerdict(True, f"digest_domain:{domain}", 0.95)

        if self._matches_subject(subject):
            return DigestVerdict(True, "digest_subject_pattern", 0.9)

        snippet = body[:BODY_SCAN_CHARS]
        body_matches = sum(1 for p in self._body_patterns if p.search(snippet))
        if body_matches >= BODY_MATCH_THRESHOLD:
            return DigestVerdict(True, "digest_body_patterns", 0.85)

        return DigestVerdict(False, "no_digest_signals", 0.0)

    def split(self, emails: Iterable[RawEmail]) -> Tuple[List[RawEmail], List[RawEmail]]:
        """Returns (kept, dropped), each in input order."""
        kept: List[RawEmail] = []
        dropped: List[RawEmail] = []
        for email in emails:
            verdict = self.detect(email)
            if verdict.is_digest:
                logger.debug(f"Digest dropped ({verdict.reason}): {email.subject}")
                dropped.append(email)
            else:
                kept.append(email)
        return kept, dropped

    def statistics(self, emails: Iterable[RawEmail]) -> Dict:
        stats: Dict = {"total": 0, "digests": 0, "applications": 0, "unknown": 0, "by_reason": {}}
        for email in emails:
            verdict = self.detect(email)
            stats["total"] += 1
            if verdict.is_digest:
                stats["digests"] += 1
            elif verdict.reason == "application_email":
                stats["applications"] += 1
            else:
                stats["unknown"] += 1
            stats["by_reason"][verdict.reason] = stats["by_reason"].get(verdict.reason, 0) + 1
        return stats

    def is_application_email(self, subject: str, body: str) -> bool:
        for pattern in self._strong_subject:
            if pattern.search(subject):
                return True
        content = f"{subject} {body[:1000]}"
        return any(p.search(content) for p in self._application)

    def has_application_signals(self, subject: str, body: str) -> bool:
        content = f"{subject} {body[:500]}"
        if any(p.search(content) for p in self._ats):
            return True
        return self.is_application_email(subject, body)

    def _matches_subject(self, subject: str) -> bool:
        return any(p.search(subject) for p in self._subject_patterns)

    @staticmethod
    def extract_domain(sender: str) -> str:
        """Domain of the sender address, or the full address when it is a known alert sender."""
        match = _ADDRESS_RE.search(sender or "")
        if match:
            address = (match.group(1) or match.group(2)).lower().strip()
            if address in DIGEST_ADDRESSES:
                return address
            if "@" in address:
                return address.rsplit("@", 1)[1]
        return ""

    @staticmethod
    def _domain_in(domain: str, domains: Iterable[str]) -> bool:
        return any(domain == d or domain.endswith(f".{d}") for d in domains)

    def is_digest_domain(self, domain: str) -> bool:
        if not domain:
            return False
        if domain in DIGEST_ADDRESSES:
            return True
        return self._domain_in(domain, DIGEST_DOMAINS | NEWSLETTER_PLATFORMS)

    def is_mixed_domain(self, domain: str) -> bool:
        return bool(domain) and self._domain_in(domain, MIXED_DOMAINS)

    def is_newsletter_platform(self, domain: str) -> bool:
        return bool(domain) and self._domain_in(domain, NEWSLETTER_PLATFORMS)
