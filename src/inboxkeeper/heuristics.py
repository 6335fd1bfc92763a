"""Deterministic priority, sentiment, category and action heuristics.

Used whenever the language model cannot answer. Every function here is a
pure function of the email's text fields.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable

from inboxkeeper.models import (
    CustomFilterResult,
    Email,
    EmailAction,
    EmailPriority,
    EmailTone,
    Sentiment,
)

if TYPE_CHECKING:
    from inboxkeeper.config import ClassifierConfig

logger = logging.getLogger(__name__)


def normalize_text(text: str) -> str:
    """Lowercase, collapse newlines and tabs to spaces, trim."""
    return re.sub(r"[\r\n\t]+", " ", (text or "").lower()).strip()


def _term_pattern(term: str, stem: bool = False) -> re.Pattern:
    """Match a keyword on word boundaries.

    Boundaries are only enforced at ends that are word characters, so
    fragments such as "% off" or "deals@" still match. A trailing plural
    "s" is accepted; with stem=True any suffix is.
    """
    body = re.escape(term.lower())
    prefix = r"\b" if term[:1].isalnum() else ""
    if stem or not term[-1:].isalnum():
        suffix = ""
    else:
        suffix = r"s?\b"
    return re.compile(prefix + body + suffix)


def _patterns(terms: Iterable[str], stem: bool = False) -> list[re.Pattern]:
    return [_term_pattern(t, stem) for t in terms if t]


def _first_match(patterns: list[re.Pattern], *texts: str) -> str | None:
    for pattern in patterns:
        for text in texts:
            if text and pattern.search(text):
                return pattern.pattern
    return None


def _count_matches(patterns: list[re.Pattern], text: str) -> int:
    return sum(1 for p in patterns if p.search(text))


@dataclass
class PriorityScore:
    """Priority scoring breakdown."""

    priority: EmailPriority
    score: float
    reasons: list[str] = field(default_factory=list)
    short_circuit: str | None = None
    is_marketing: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "priority": self.priority.value,
            "score": self.score,
            "reasons": self.reasons,
            "short_circuit": self.short_circuit,
            "is_marketing": self.is_marketing,
        }


@dataclass
class HeuristicReport:
    """All heuristic results for one email."""

    priority: PriorityScore
    sentiment: Sentiment
    categories: list[str]
    action: EmailAction | None

    def to_dict(self) -> dict:
        return {
            "priority": self.priority.to_dict(),
            "sentiment": self.sentiment.value,
            "categories": self.categories,
            "action": self.action.value if self.action else None,
        }


class HeuristicClassifier:
    """Keyword and score based stand-in for the language model."""

    IMMEDIATE_RESPONSE_PHRASE = "immediate response required"

    SYSTEM_SENDER_PATTERNS = [
        "system", "automated", "notification", "alert@", "notify@",
        "daemon", "postmaster", "mailer-daemon", "auto-confirm",
    ]
    SYSTEM_SUBJECT_PATTERNS = [
        "backup complete", "report generated", "sync complete",
        "update available", "maintenance notice",
    ]

    PROMOTIONAL_PATTERNS = [
        "limited time", "act now", "don't miss", "exclusive offer", "special deal",
        "save now", "% off", "discount code", "free shipping", "buy now",
        "flash sale", "ends soon", "hurry", "last chance", "today only",
        "shop now", "order today", "this week's deals", "off select",
        "valid online only", "while quantities last",
    ]
    NEWSLETTER_PATTERNS = [
        "unsubscribe", "email preferences", "opt out", "opt-out", "mailing list",
        "newsletter", "weekly digest", "monthly update", "promotional email",
    ]
    MARKETING_SENDER_PATTERNS = [
        "noreply", "no-reply", "donotreply", "marketing@", "sales@",
        "promotions@", "deals@", "offers@", "news@", "updates@",
    ]
    MARKETING_DOMAINS = [
        "mailchimp.com", "constantcontact.com", "sendgrid.net", "amazonses.com",
        "sparkpost.com", "mailgun.org", "sendinblue.com", "mcsv.net",
        "rsgsv.net", "klaviyomail.com", "hubspotemail.net",
    ]
    TRACKING_PATTERNS = ["pixel.gif", "track.php", "click.php"]

    MEETING_KEYWORDS = [
        "meeting", "schedule", "setup a meeting", "meeting request",
        "availability", "discuss", "collaboration",
    ]
    IMMEDIATE_PATTERNS = [
        "right now", "immediately", "urgent", "emergency", "asap",
        "within the hour", "by end of day", "by eod", "before you leave",
    ]
    TODAY_PATTERNS = ["today", "this afternoon", "this morning", "tonight"]
    WEEK_PATTERNS = ["this week", "by friday", "by thursday", "next few days"]
    EXECUTIVE_TITLES = ["ceo", "cto", "cfo", "president", "vp", "director", "chief"]
    CRITICAL_TERMS = [
        "contract", "deal", "proposal", "deadline", "deliverable",
        "escalation", "outage", "down", "not working", "broken",
        "security", "breach", "compliance", "audit", "legal",
    ]
    COLLABORATION_KEYWORDS = [
        "collaboration", "partnership", "team up", "work together",
    ]
    SOCIAL_KEYWORDS = [
        "game", "party", "dinner", "lunch", "coffee", "drinks", "hang out",
        "get together", "celebration", "birthday", "anniversary", "wedding",
        "concert", "movie", "invitation", "rsvp",
    ]
    ACTION_PHRASES = [
        "please respond", "please reply", "let me know", "need your",
        "waiting for", "blocked on", "can you", "could you",
        "please review", "please approve", "sign off",
    ]

    MEETING_BONUS = 3.5
    IMMEDIATE_BONUS = 1.5
    TODAY_BONUS = 1.0
    WEEK_BONUS = 0.5
    EXECUTIVE_BONUS = 2.0
    PERSONAL_CONTACT_BONUS = 1.5
    SMALL_AUDIENCE_BONUS = 0.5
    CRITICAL_TERM_BONUS = 0.5
    QUESTION_BONUS = 0.3
    MAX_QUESTIONS = 3
    COLLABORATION_BONUS = 1.0
    SOCIAL_BONUS = 2.5
    ACTION_PHRASE_BONUS = 0.5
    ACTION_PHRASE_CAP = 1.5
    MARKETING_PENALTY = -3.0
    THREAD_REPLY_DISCOUNT = -0.5

    URGENT_THRESHOLD = 4.0
    HIGH_THRESHOLD = 3.0
    MEDIUM_THRESHOLD = 1.5

    POSITIVE_WORDS = [
        "thank", "appreciate", "great", "excellent", "wonderful",
        "perfect", "amazing", "fantastic", "love", "excited", "happy",
        "pleased", "delighted", "congratulations", "well done",
    ]
    NEGATIVE_WORDS = [
        "problem", "issue", "concern", "disappointed", "frustrated", "angry",
        "unacceptable", "terrible", "horrible", "complaint", "fail", "error",
        "mistake", "wrong", "broken", "bug", "crash",
    ]
    CRITICAL_WORDS = [
        "urgent", "emergency", "critical", "severe", "immediate", "escalate",
        "unacceptable", "lawsuit", "legal action", "breach",
    ]

    # Checked in this order; at most MAX_CATEGORIES are reported
    CATEGORY_KEYWORDS = {
        "Meeting": [
            "meeting", "schedule", "calendar", "invite", "conference", "call",
            "discuss", "collaboration", "availability",
        ],
        "Project": ["project", "milestone", "deliverable", "sprint", "task", "jira"],
        "Finance": ["invoice", "payment", "budget", "expense", "purchase", "cost"],
        "Support": ["support", "help", "issue", "problem", "ticket", "troubleshoot"],
        "Client": ["client", "customer", "account"],
        "HR": ["hr", "human resources", "benefits", "policy", "leave", "vacation"],
        "Newsletter": ["newsletter", "digest", "update", "announcement"],
        "Marketing": ["marketing", "campaign", "promotion", "sale"],
        "Social": [
            "game", "party", "dinner", "lunch", "coffee", "drinks",
            "hang out", "get together", "invitation",
        ],
    }
    MAX_CATEGORIES = 3
    DEFAULT_CATEGORY = "General"

    REPLY_INDICATORS = [
        "please reply", "please respond", "let me know", "your thoughts",
        "feedback", "opinion", "what do you think", "can you confirm",
        "please advise", "waiting for your", "need your input",
        "rsvp", "please answer", "reply by",
    ]
    FORWARD_INDICATORS = [
        "please forward", "share with", "pass along", "distribute",
        "send to", "loop in", "please add", "please include",
    ]
    ARCHIVE_INDICATORS = [
        "fyi", "for your information", "no action needed", "informational",
    ]

    def __init__(self, config: ClassifierConfig | None = None):
        """Initialize the classifier and pre-compile keyword patterns."""
        self.config = config
        personal = config.personal_contacts if config else []
        extra_domains = config.extra_marketing_domains if config else []

        self.marketing_domains = [d.lower() for d in self.MARKETING_DOMAINS + extra_domains]

        self._system_sender = _patterns(self.SYSTEM_SENDER_PATTERNS)
        self._system_subject = _patterns(self.SYSTEM_SUBJECT_PATTERNS)
        self._promotional = _patterns(self.PROMOTIONAL_PATTERNS + self.NEWSLETTER_PATTERNS)
        self._marketing_sender = _patterns(self.MARKETING_SENDER_PATTERNS)
        self._meeting = _patterns(self.MEETING_KEYWORDS)
        self._immediate = _patterns(self.IMMEDIATE_PATTERNS)
        self._today = _patterns(self.TODAY_PATTERNS)
        self._week = _patterns(self.WEEK_PATTERNS)
        self._executive = _patterns(self.EXECUTIVE_TITLES)
        self._personal = _patterns(personal, stem=True)
        self._critical_terms = _patterns(self.CRITICAL_TERMS)
        self._collaboration = _patterns(self.COLLABORATION_KEYWORDS)
        self._social = _patterns(self.SOCIAL_KEYWORDS)
        self._action_phrases = _patterns(self.ACTION_PHRASES)
        self._positive = _patterns(self.POSITIVE_WORDS, stem=True)
        self._negative = _patterns(self.NEGATIVE_WORDS, stem=True)
        self._critical_words = _patterns(self.CRITICAL_WORDS, stem=True)
        self._categories = {
            name: _patterns(terms, stem=True) for name, terms in self.CATEGORY_KEYWORDS.items()
        }
        self._reply = _patterns(self.REPLY_INDICATORS)
        self._forward = _patterns(self.FORWARD_INDICATORS)
        self._archive = _patterns(self.ARCHIVE_INDICATORS)

    # ========================================
    # Priority
    # ========================================

    def analyze_priority(self, email: Email) -> EmailPriority:
        """Priority bucket for an email."""
        return self.score_priority(email).priority

    def score_priority(self, email: Email) -> PriorityScore:
        """Score an email and return the bucket with its breakdown."""
        subject = normalize_text(email.subject)
        content = normalize_text(email.content)
        sender = normalize_text(email.sender)
        sender_email = email.sender_email.lower()
        combined = f"{subject} {content}"

        if self.IMMEDIATE_RESPONSE_PHRASE in subject:
            return PriorityScore(
                priority=EmailPriority.URGENT,
                score=0.0,
                reasons=["Subject requires immediate response"],
                short_circuit="immediate_response",
            )

        if self._is_system(subject, sender, sender_email):
            return PriorityScore(
                priority=EmailPriority.UPDATE,
                score=0.0,
                reasons=["Automated system notification"],
                short_circuit="system_notification",
            )

        reasons: list[str] = []
        score = 0.0
        marketing = self._is_marketing(subject, content, sender_email, email.sender_domain)

        if marketing:
            score += self.MARKETING_PENALTY
            reasons.append("Marketing email (positive signals ignored)")
        else:
            score += self._score_contributions(email, combined, sender, sender_email, reasons)

        if email.suggested_action == EmailAction.REPLY and email.thread_id:
            score += self.THREAD_REPLY_DISCOUNT
            reasons.append("Reply within an existing thread")

        score = round(score, 4)
        priority = self._bucket(score)

        logger.debug(
            f"Heuristic priority for '{email.subject[:60]}': "
            f"score={score:.2f} -> {priority.value}"
        )

        return PriorityScore(
            priority=priority,
            score=score,
            reasons=reasons,
            is_marketing=marketing,
        )

    def _score_contributions(
        self,
        email: Email,
        combined: str,
        sender: str,
        sender_email: str,
        reasons: list[str],
    ) -> float:
        score = 0.0

        if _first_match(self._meeting, combined):
            score += self.MEETING_BONUS
            reasons.append("Meeting or scheduling request")

        # Only the most pressing time tier counts
        if _first_match(self._immediate, combined):
            score += self.IMMEDIATE_BONUS
            reasons.append("Immediate time pressure")
        elif _first_match(self._today, combined):
            score += self.TODAY_BONUS
            reasons.append("Due today")
        elif _first_match(self._week, combined):
            score += self.WEEK_BONUS
            reasons.append("Due this week")

        if _first_match(self._executive, sender, sender_email):
            score += self.EXECUTIVE_BONUS
            reasons.append("Sender has an executive title")
        if _first_match(self._personal, sender, sender_email):
            score += self.PERSONAL_CONTACT_BONUS
            reasons.append("Sender is a personal contact")

        # Both audience checks may fire for counts below three
        recipient_count = len(email.recipients)
        if recipient_count <= 3:
            score += self.SMALL_AUDIENCE_BONUS
        if recipient_count < 3:
            score += self.SMALL_AUDIENCE_BONUS

        critical = _count_matches(self._critical_terms, combined)
        if critical:
            score += critical * self.CRITICAL_TERM_BONUS
            reasons.append(f"Critical business terms: {critical}")

        questions = min(combined.count("?"), self.MAX_QUESTIONS)
        if questions:
            score += questions * self.QUESTION_BONUS
            reasons.append(f"Questions asked: {questions}")

        if _first_match(self._collaboration, combined):
            score += self.COLLABORATION_BONUS
            reasons.append("Collaboration request")

        if _first_match(self._social, combined):
            score += self.SOCIAL_BONUS
            reasons.append("Social or personal event")

        actions = _count_matches(self._action_phrases, combined)
        if actions:
            score += min(actions * self.ACTION_PHRASE_BONUS, self.ACTION_PHRASE_CAP)
            reasons.append(f"Direct action requests: {actions}")

        return score

    def _bucket(self, score: float) -> EmailPriority:
        if score >= self.URGENT_THRESHOLD:
            return EmailPriority.URGENT
        if score >= self.HIGH_THRESHOLD:
            return EmailPriority.HIGH
        if score >= self.MEDIUM_THRESHOLD:
            return EmailPriority.MEDIUM
        return EmailPriority.LOW

    # ========================================
    # Pattern sets
    # ========================================

    def is_marketing(self, email: Email) -> bool:
        """Check if an email looks promotional or bulk."""
        return self._is_marketing(
            normalize_text(email.subject),
            normalize_text(email.content),
            email.sender_email.lower(),
            email.sender_domain,
        )

    def is_system_notification(self, email: Email) -> bool:
        """Check if an email is an automated notification."""
        return self._is_system(
            normalize_text(email.subject),
            normalize_text(email.sender),
            email.sender_email.lower(),
        )

    def _is_marketing(self, subject: str, content: str, sender_email: str, domain: str) -> bool:
        if _first_match(self._promotional, subject, content, sender_email):
            return True
        if _first_match(self._marketing_sender, sender_email):
            return True
        for bulk_domain in self.marketing_domains:
            if domain == bulk_domain or domain.endswith("." + bulk_domain):
                return True
        return any(marker in content for marker in self.TRACKING_PATTERNS)

    def _is_system(self, subject: str, sender: str, sender_email: str) -> bool:
        if _first_match(self._system_sender, sender, sender_email):
            return True
        return _first_match(self._system_subject, subject) is not None

    # ========================================
    # Sentiment, categories, action
    # ========================================

    def analyze_sentiment(self, email: Email) -> Sentiment:
        """Word-count based sentiment of the body."""
        content = normalize_text(email.content)
        positive = _count_matches(self._positive, content)
        negative = _count_matches(self._negative, content)

        if negative and _first_match(self._critical_words, content):
            return Sentiment.CRITICAL
        if positive > negative * 2:
            return Sentiment.POSITIVE
        if negative > positive * 2:
            return Sentiment.NEGATIVE
        return Sentiment.NEUTRAL

    def classify(self, email: Email) -> list[str]:
        """Up to three category labels in fixed order, or ["General"]."""
        combined = f"{normalize_text(email.subject)} {normalize_text(email.content)}"
        labels = []
        for name, patterns in self._categories.items():
            if _first_match(patterns, combined):
                labels.append(name)
            elif name == "Client" and "external" in email.sender_email.lower():
                labels.append(name)
        return labels[: self.MAX_CATEGORIES] or [self.DEFAULT_CATEGORY]

    def infer_action(self, email: Email) -> EmailAction | None:
        """Suggested action, checked in strict order."""
        subject = normalize_text(email.subject)
        content = normalize_text(email.content)
        sender = normalize_text(email.sender)
        sender_email = email.sender_email.lower()

        if _first_match(self._reply, content, subject):
            return EmailAction.REPLY
        if _first_match(self._personal, sender, sender_email):
            return EmailAction.REPLY
        if "?" in content and email.suggested_action != EmailAction.REPLY:
            return EmailAction.REPLY
        if _first_match(self._forward, content):
            return EmailAction.FORWARD
        if self._is_marketing(subject, content, sender_email, email.sender_domain):
            return EmailAction.DELETE
        if _first_match(self._archive, content):
            return EmailAction.ARCHIVE
        return None

    def analyze(self, email: Email) -> HeuristicReport:
        """Run every heuristic over one email."""
        return HeuristicReport(
            priority=self.score_priority(email),
            sentiment=self.analyze_sentiment(email),
            categories=self.classify(email),
            action=self.infer_action(email),
        )

    # ========================================
    # Template text generation
    # ========================================

    def generate_reply(self, email: Email, tone: EmailTone = EmailTone.PROFESSIONAL) -> str:
        """Canned reply matched to the message topic."""
        content = normalize_text(email.content)

        if "meeting" in content:
            base = "Thanks for the meeting invitation. I'll check the details and confirm my availability shortly."
        elif "project" in content:
            base = "Thanks for the project update. I've gone through it and will send my feedback soon."
        elif "question" in content:
            base = "Thanks for your question. I'll look into it and get back to you with a full answer."
        elif "deadline" in content:
            base = "Thanks for the heads-up on the deadline. I'll make sure this is done by the date mentioned."
        elif "urgent" in content:
            base = "I've received your urgent message and I'm looking into it now. I'll update you as soon as I can."
        else:
            base = "Thanks for your email. I've received your message and will respond accordingly."
        return apply_tone(base, tone)

    def generate_forward(self, email: Email, tone: EmailTone = EmailTone.PROFESSIONAL) -> str:
        """Canned forwarding note."""
        base = (
            "I'm forwarding the message below for your review. "
            "Let me know if you have any questions or need more context."
        )
        return apply_tone(base, tone)

    def generate_email_from_prompt(self, prompt: str, tone: EmailTone = EmailTone.PROFESSIONAL) -> str:
        """Draft skeleton for a compose request."""
        base = (
            "Subject: [Generated Email]\n\n"
            "Based on your request, here's the email content. "
            "Please review and customize as needed before sending.\n\n"
            f"[Your message content here based on: '{prompt}']"
        )
        return apply_tone(base, tone)

    # ========================================
    # Custom filters
    # ========================================

    # Request keywords mapped to ready-made Gmail queries, checked in order
    FILTER_TEMPLATES = [
        (
            ("purchase", "order", "receipt"),
            "subject:(purchase OR order OR receipt OR confirmation) "
            "OR from:(amazon.com OR ebay.com OR etsy.com)",
        ),
        (("boss", "manager"), "from:(boss@company.com OR manager@company.com)"),
        (("important", "urgent"), "subject:(urgent OR important OR priority) OR has:priority"),
        (
            ("work", "project"),
            "subject:(project OR work OR meeting) OR from:(work.com OR company.com)",
        ),
    ]
    FILTER_CONFIDENCE = 0.6
    FILTER_TERMS = 3

    def generate_custom_filter(self, request: str, emails: list[Email]) -> CustomFilterResult:
        """Gmail query for a request, from keywords or the mailbox's own patterns."""
        lowered = request.lower()
        for keywords, template in self.FILTER_TEMPLATES:
            if any(k in lowered for k in keywords):
                query = template
                break
        else:
            subjects = " OR ".join(common_subject_words(emails)[: self.FILTER_TERMS])
            senders = " OR ".join(common_sender_domains(emails)[: self.FILTER_TERMS])
            query = f"subject:({subjects}) OR from:({senders})"

        return CustomFilterResult(
            title=smart_title(request),
            query=query,
            description="Fallback filter based on your request and email patterns",
            confidence=self.FILTER_CONFIDENCE,
        )


def common_sender_domains(emails: list[Email], limit: int = 5) -> list[str]:
    """Most frequent sender domains, most common first."""
    counts = Counter(e.sender_domain for e in emails if e.sender_domain)
    return [domain for domain, _ in counts.most_common(limit)]


def common_subject_words(emails: list[Email], limit: int = 5) -> list[str]:
    """Most frequent subject words longer than three characters."""
    counts = Counter(
        word for e in emails for word in e.subject.lower().split() if len(word) > 3
    )
    return [word for word, _ in counts.most_common(limit)]


def smart_title(request: str) -> str:
    """Short display title for a filter request."""
    words = [w.capitalize() for w in request.split()]
    if len(words) == 1:
        return f"{words[0]} Emails"
    if 1 < len(words) <= 3:
        return " ".join(words)
    return "Custom Filter"


def apply_tone(content: str, tone: EmailTone) -> str:
    """Wrap template text in tone-specific phrasing."""
    if tone in (EmailTone.PROFESSIONAL, EmailTone.ORIGINAL):
        return content
    if tone == EmailTone.FRIENDLY:
        return f"Hi there! {content} Looking forward to hearing from you!"
    if tone == EmailTone.CASUAL:
        return f"Hey! {content} Thanks!"
    if tone == EmailTone.FORMAL:
        return f"Dear Sir/Madam,\n\n{content}\n\nSincerely,\n[Your Name]"
    if tone == EmailTone.PERSUASIVE:
        return f"I believe this is important: {content} I hope you'll give it careful thought."
    if tone == EmailTone.APOLOGETIC:
        return f"I sincerely apologize for the delay. {content} Thank you for your patience."
    if tone == EmailTone.ENTHUSIASTIC:
        return f"Great news! {content} I'm really excited about this!"
    if tone == EmailTone.URGENT:
        return f"URGENT: {content} Please respond as soon as possible."
    if tone == EmailTone.HUMOROUS:
        return f"Well, well, well... {content} :)"
    if tone == EmailTone.ANGRY:
        return f"I'm very disappointed to be writing this. {content} This needs to be addressed immediately."
    return content
