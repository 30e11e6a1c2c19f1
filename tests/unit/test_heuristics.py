import pytest

from jobsync.core.heuristics import (
    MAX_HEURISTIC_CONFIDENCE,
    clean_position_title,
    guess_company,
    guess_position,
    guess_status,
    keyword_probability,
    keyword_scores,
)
from jobsync.core.models import JobStatus


class TestKeywordProbability:

    def test_no_keywords_is_neutral(self):
        assert keyword_probability("") == 0.5
        assert keyword_probability("See you at dinner") == 0.5

    def test_job_keywords_raise_probability(self):
        assert keyword_probability("Interview for the position") == pytest.approx(0.7)

    def test_non_job_keywords_lower_probability(self):
        assert keyword_probability("Your invoice and receipt") == pytest.approx(0.3)

    def test_capped_below_auto_approve(self):
        text = "interview position application job offer salary recruiter resume"
        assert keyword_probability(text) == MAX_HEURISTIC_CONFIDENCE
        assert keyword_probability("payment invoice receipt order shipping delivery") == pytest.approx(
            1 - MAX_HEURISTIC_CONFIDENCE
        )

    def test_whole_words_only(self):
        # "jobs" and "ordering" are not keywords
        assert keyword_scores("jobs ordering") == {"job": 0, "non_job": 0}


class TestGuessing:

    def test_company_from_sender_domain(self):
        assert guess_company("Talent <talent@initech.com>", "Hello", "") == "Initech"

    def test_generic_domain_falls_back_to_subject(self):
        assert guess_company("no-reply@greenhouse.io", "Your application at Globex", "") == "Globex"

    def test_company_from_body(self):
        body = "Thank you for applying to Umbrella Corp for the analyst role."
        assert guess_company("someone@gmail.com", "Thanks", body) == "Umbrella Corp"

    def test_company_unknown(self):
        assert guess_company("someone@gmail.com", "Hi", "Hello") is None

    def test_position_from_subject(self):
        assert guess_position("Application for Senior Data Engineer at Acme", "") == "Senior Data Engineer"

    def test_position_from_body(self):
        assert guess_position("Thanks", "Thank you for applying for the Backend Developer position.") == (
            "Backend Developer"
        )

    def test_position_unknown(self):
        assert guess_position("Hello", "Nothing here") is None

    def test_clean_position_title(self):
        assert clean_position_title("Data Analyst R123456") == "Data Analyst"
        assert clean_position_title("  ") is None

    @pytest.mark.parametrize("text,expected", [
        ("Congratulations! We are pleased to offer you the role", JobStatus.OFFER),
        ("Unfortunately we will not be moving forward", JobStatus.DECLINED),
        ("Can we schedule a call next week?", JobStatus.INTERVIEWED),
        ("We received your application", JobStatus.APPLIED),
        ("Unfortunately the interview slot is gone", JobStatus.DECLINED),
    ])
    def test_guess_status(self, text, expected):
        assert guess_status(text) is expected
