"""Tests for the heuristic classifier."""

import pytest

from inboxkeeper.config import ClassifierConfig
from inboxkeeper.heuristics import (
    HeuristicClassifier,
    apply_tone,
    common_sender_domains,
    common_subject_words,
    normalize_text,
    smart_title,
)
from inboxkeeper.models import Email, EmailAction, EmailPriority, EmailTone, Sentiment

# Enough recipients that the small-audience bonus does not apply
FIVE_RECIPIENTS = [f"r{i}@example.com" for i in range(5)]


def create_test_email(**kwargs) -> Email:
    """Helper to create test emails."""
    defaults = {
        "subject": "Notes",
        "sender": "Sam Lee",
        "sender_email": "sam@example.com",
        "recipients": list(FIVE_RECIPIENTS),
        "content": "Here are the notes.",
        "message_id": "m1",
    }
    defaults.update(kwargs)
    return Email(**defaults)


@pytest.fixture
def classifier():
    return HeuristicClassifier(ClassifierConfig(personal_contacts=["mom"]))


class TestNormalizeText:
    def test_collapses_whitespace(self):
        assert normalize_text("  Hello\r\n\tWorld  ") == "hello world"


class TestPriorityShortCircuits:
    """Tests for early exits and the marketing override."""

    def test_immediate_response_required_is_urgent(self, classifier):
        email = create_test_email(
            subject="Immediate Response Required: server down",
            content="Just an fyi, nothing else here.",
        )
        score = classifier.score_priority(email)
        assert score.priority == EmailPriority.URGENT
        assert score.short_circuit == "immediate_response"

    def test_system_notification_is_update(self, classifier):
        email = create_test_email(subject="Nightly backup complete", sender="Ops Bot")
        score = classifier.score_priority(email)
        assert score.priority == EmailPriority.UPDATE
        assert score.short_circuit == "system_notification"

    def test_system_sender(self, classifier):
        email = create_test_email(sender="Monitoring", sender_email="notify@status.example.com")
        assert classifier.analyze_priority(email) == EmailPriority.UPDATE

    def test_flash_sale_is_low_despite_today(self, classifier):
        email = create_test_email(
            subject="Flash Sale: 50% off today only!",
            sender="Retailer",
            sender_email="deals@retailer.com",
            recipients=["me@example.com"],
        )
        score = classifier.score_priority(email)
        assert score.priority == EmailPriority.LOW
        assert score.is_marketing is True
        assert score.score == pytest.approx(-3.0)

    def test_marketing_skips_positive_signals(self, classifier):
        email = create_test_email(
            subject="Meeting the season: exclusive offer inside",
            content="Let me know if you want to schedule a call today.",
        )
        score = classifier.score_priority(email)
        assert score.priority == EmailPriority.LOW
        assert not any("Meeting" in r for r in score.reasons)

    def test_bulk_mail_domain(self, classifier):
        email = create_test_email(sender_email="team@mail.mailchimp.com")
        assert classifier.is_marketing(email)

    def test_extra_marketing_domain(self):
        classifier = HeuristicClassifier(ClassifierConfig(extra_marketing_domains=["shop.example"]))
        assert classifier.is_marketing(create_test_email(sender_email="hello@shop.example"))
        assert not classifier.is_marketing(create_test_email(sender_email="hello@myshop.example"))

    def test_tracking_pixel(self, classifier):
        email = create_test_email(content='<img src="https://t.example.com/pixel.gif">')
        assert classifier.is_marketing(email)

    def test_ordinary_mail_is_not_marketing(self, classifier):
        assert not classifier.is_marketing(create_test_email())


class TestPriorityScoring:
    """Tests for additive score contributions."""

    def test_baseline_is_low(self, classifier):
        score = classifier.score_priority(create_test_email())
        assert score.score == 0.0
        assert score.priority == EmailPriority.LOW

    def test_meeting_request_from_single_sender(self, classifier):
        email = create_test_email(
            subject="Meeting request",
            content="Can we schedule time to discuss the roadmap?",
            recipients=["me@example.com"],
        )
        score = classifier.score_priority(email)
        # meeting 3.5 + audience 0.5 + 0.5 + one question 0.3
        assert score.score == pytest.approx(4.8)
        assert score.priority == EmailPriority.URGENT

    def test_only_highest_time_tier_counts(self, classifier):
        email = create_test_email(content="Please fix this immediately, ideally today.")
        score = classifier.score_priority(email)
        assert score.score == pytest.approx(1.5)
        assert "Immediate time pressure" in score.reasons
        assert "Due today" not in score.reasons
        assert score.priority == EmailPriority.MEDIUM

    def test_same_week_tier(self, classifier):
        email = create_test_email(content="Send it over this week.")
        assert classifier.score_priority(email).score == pytest.approx(0.5)

    @pytest.mark.parametrize(
        "count,expected",
        [(0, 1.0), (2, 1.0), (3, 0.5), (4, 0.0)],
    )
    def test_recipient_count_checks_overlap(self, classifier, count, expected):
        email = create_test_email(recipients=[f"r{i}@example.com" for i in range(count)])
        assert classifier.score_priority(email).score == pytest.approx(expected)

    def test_executive_sender(self, classifier):
        email = create_test_email(sender="Dana Smith (CEO)", sender_email="dana@corp.com")
        score = classifier.score_priority(email)
        assert score.score == pytest.approx(2.0)
        assert score.priority == EmailPriority.MEDIUM

    def test_personal_contact(self, classifier):
        email = create_test_email(sender="Mom", sender_email="mom@family.net")
        assert classifier.score_priority(email).score == pytest.approx(1.5)

    def test_critical_terms_counted_per_distinct_term(self, classifier):
        email = create_test_email(content="The contract deadline moved. Contract attached.")
        assert classifier.score_priority(email).score == pytest.approx(1.0)

    def test_question_marks_capped(self, classifier):
        email = create_test_email(content="One? Two? Three? Four? Five?")
        assert classifier.score_priority(email).score == pytest.approx(0.9)

    def test_action_phrases_capped(self, classifier):
        email = create_test_email(
            content="Please respond. Let me know. Can you check? Could you confirm? Please review."
        )
        score = classifier.score_priority(email)
        # actions capped at 1.5 + two questions 0.6
        assert score.score == pytest.approx(2.1)
        assert "Direct action requests: 5" in score.reasons

    def test_collaboration(self, classifier):
        email = create_test_email(content="We would love a partnership with your team.")
        assert classifier.score_priority(email).score == pytest.approx(1.0)

    def test_social_event(self, classifier):
        email = create_test_email(subject="Birthday party on Saturday")
        score = classifier.score_priority(email)
        assert score.score == pytest.approx(2.5)
        assert score.priority == EmailPriority.MEDIUM

    def test_thread_reply_discount(self, classifier):
        email = create_test_email(suggested_action=EmailAction.REPLY, thread_id="t1")
        assert classifier.score_priority(email).score == pytest.approx(-0.5)

    def test_no_discount_without_thread(self, classifier):
        email = create_test_email(suggested_action=EmailAction.REPLY)
        assert classifier.score_priority(email).score == pytest.approx(0.0)

    def test_word_boundaries(self, classifier):
        # "downtown" must not count as "down", "vpn" must not count as "vp"
        email = create_test_email(content="Office moved downtown.", sender_email="vpn-admin@corp.com")
        assert classifier.score_priority(email).score == pytest.approx(0.0)

    def test_score_to_dict(self, classifier):
        data = classifier.score_priority(create_test_email()).to_dict()
        assert data["priority"] == "Low"
        assert data["short_circuit"] is None


class TestSentiment:
    """Tests for sentiment analysis."""

    def test_positive(self, classifier):
        email = create_test_email(content="Thank you, this is great and excellent work.")
        assert classifier.analyze_sentiment(email) == Sentiment.POSITIVE

    def test_negative(self, classifier):
        email = create_test_email(content="There is a problem and an error. This is terrible.")
        assert classifier.analyze_sentiment(email) == Sentiment.NEGATIVE

    def test_critical_needs_negative_word(self, classifier):
        critical = create_test_email(content="Urgent: the outage is a critical problem.")
        assert classifier.analyze_sentiment(critical) == Sentiment.CRITICAL

        urgent_thanks = create_test_email(content="Urgent: thanks!")
        assert classifier.analyze_sentiment(urgent_thanks) == Sentiment.POSITIVE

    def test_balanced_is_neutral(self, classifier):
        email = create_test_email(content="Thanks for the report. There is one issue.")
        assert classifier.analyze_sentiment(email) == Sentiment.NEUTRAL


class TestClassification:
    """Tests for category labels."""

    def test_capped_at_three_in_fixed_order(self, classifier):
        email = create_test_email(
            subject="Planning",
            content=(
                "Let's schedule a meeting about the project budget "
                "and the support ticket for our client."
            ),
        )
        assert classifier.classify(email) == ["Meeting", "Project", "Finance"]

    def test_default_general(self, classifier):
        email = create_test_email(subject="Hello there", content="Nice to see you.")
        assert classifier.classify(email) == ["General"]

    def test_external_sender_is_client(self, classifier):
        email = create_test_email(
            subject="Hello there", content="Nice to see you.", sender_email="bob@external.com"
        )
        assert classifier.classify(email) == ["Client"]

    def test_social(self, classifier):
        email = create_test_email(subject="Coffee on Friday", content="See you.")
        assert classifier.classify(email) == ["Social"]


class TestActionInference:
    """Tests for suggested action order."""

    def test_question_beats_forward(self, classifier):
        email = create_test_email(content="Could you please forward this to the team?")
        assert classifier.infer_action(email) == EmailAction.REPLY

    def test_reply_indicator(self, classifier):
        email = create_test_email(content="Please let me know your thoughts.")
        assert classifier.infer_action(email) == EmailAction.REPLY

    def test_personal_contact_sender(self, classifier):
        email = create_test_email(sender="Mom", sender_email="mom@family.net")
        assert classifier.infer_action(email) == EmailAction.REPLY

    def test_question_ignored_when_already_reply(self, classifier):
        email = create_test_email(content="Where is it?", suggested_action=EmailAction.REPLY)
        assert classifier.infer_action(email) is None

    def test_forward(self, classifier):
        email = create_test_email(content="Please forward this to the finance team.")
        assert classifier.infer_action(email) == EmailAction.FORWARD

    def test_marketing_deleted(self, classifier):
        email = create_test_email(
            subject="Flash sale", content="Shop now.", sender_email="deals@retailer.com"
        )
        assert classifier.infer_action(email) == EmailAction.DELETE

    def test_fyi_archived(self, classifier):
        email = create_test_email(content="FYI, the office is closed Monday.")
        assert classifier.infer_action(email) == EmailAction.ARCHIVE

    def test_no_action(self, classifier):
        email = create_test_email(content="The report is attached.")
        assert classifier.infer_action(email) is None


class TestGeneration:
    """Tests for template replies."""

    def test_topic_specific_reply(self, classifier):
        email = create_test_email(content="Can we move the meeting?")
        reply = classifier.generate_reply(email, EmailTone.PROFESSIONAL)
        assert "meeting" in reply

    def test_formal_tone(self, classifier):
        reply = classifier.generate_reply(create_test_email(), EmailTone.FORMAL)
        assert reply.startswith("Dear Sir/Madam")

    def test_forward_note(self, classifier):
        note = classifier.generate_forward(create_test_email(), EmailTone.URGENT)
        assert note.startswith("URGENT:")

    def test_original_tone_unchanged(self):
        assert apply_tone("Body text.", EmailTone.ORIGINAL) == "Body text."

    def test_compose_skeleton(self, classifier):
        draft = classifier.generate_email_from_prompt("thank the team", EmailTone.PROFESSIONAL)
        assert draft.startswith("Subject: [Generated Email]")
        assert draft.endswith("[Your message content here based on: 'thank the team']")

    def test_compose_friendly(self, classifier):
        draft = classifier.generate_email_from_prompt("thank the team", EmailTone.FRIENDLY)
        assert draft.startswith("Hi there! Subject: [Generated Email]")
        assert draft.endswith("Looking forward to hearing from you!")


class TestCustomFilter:
    """Tests for the fallback filter builder."""

    def test_template_match(self, classifier):
        result = classifier.generate_custom_filter("show my receipts", [])
        assert result.query == (
            "subject:(purchase OR order OR receipt OR confirmation) "
            "OR from:(amazon.com OR ebay.com OR etsy.com)"
        )
        assert result.title == "Show My Receipts"
        assert result.confidence == 0.6

    def test_first_template_wins(self, classifier):
        result = classifier.generate_custom_filter("urgent orders", [])
        assert result.query.startswith("subject:(purchase")

    def test_query_from_mailbox_patterns(self, classifier):
        emails = [
            create_test_email(subject="Flight booking confirmed", sender_email="a@air.com"),
            create_test_email(subject="Flight delayed", sender_email="b@air.com"),
            create_test_email(subject="Hotel booking", sender_email="c@stay.com"),
        ]
        result = classifier.generate_custom_filter("travel", emails)
        assert result.query == "subject:(flight OR booking OR confirmed) OR from:(air.com OR stay.com)"
        assert result.title == "Travel Emails"

    def test_smart_title(self):
        assert smart_title("newsletters") == "Newsletters Emails"
        assert smart_title("team lunch plans") == "Team Lunch Plans"
        assert smart_title("everything from my bank this year") == "Custom Filter"
        assert smart_title("") == "Custom Filter"

    def test_common_sender_domains(self):
        emails = [
            create_test_email(sender_email="x@b.com"),
            create_test_email(sender_email="y@a.com"),
            create_test_email(sender_email="z@a.com"),
            create_test_email(sender_email="no-domain"),
        ]
        assert common_sender_domains(emails) == ["a.com", "b.com"]

    def test_common_subject_words_skip_short_words(self):
        emails = [create_test_email(subject="Re: the Big Launch"), create_test_email(subject="launch")]
        assert common_subject_words(emails) == ["launch"]


class TestAnalyze:
    def test_report(self, classifier):
        report = classifier.analyze(create_test_email(content="FYI, thanks a lot, great work."))
        data = report.to_dict()
        assert data["action"] == "Archive"
        assert data["sentiment"] == "Positive"
        assert data["categories"] == ["General"]
