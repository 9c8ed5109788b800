"""
Subscription parser: billing email text -> SubscriptionDraft or failure reason.

A pure, deterministic pipeline of extraction steps. Each step returns an
Extraction tagged MATCHED (found explicitly in the message), INFERRED (derived
or defaulted) or MISSING, and the final confidence is computed from those tags
alone. No I/O and no clock reads: relative phrases such as "14-day free trial"
are resolved against the caller-supplied received_at, or skipped.
"""
import enum
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from email.utils import parseaddr
from typing import Literal

from dateutil import parser as date_parser

from subtracker.models import BillingCycle, Category, Confidence, SubscriptionStatus

# Only this much of the body is scanned for amounts and dates
MAX_SCAN_CHARS = 20000
# How far before a monetary token a billing keyword may sit to count as adjacent
KEYWORD_WINDOW = 40
# Column bounds of subscriptions.merchant_name/plan_name and Numeric(12, 2)
MAX_NAME_LENGTH = 255
MAX_AMOUNT = Decimal("10000000000")


class Tag(enum.Enum):
    MATCHED = "matched"
    INFERRED = "inferred"
    MISSING = "missing"


@dataclass(frozen=True)
class Extraction:
    value: object = None
    tag: Tag = Tag.MISSING

    @classmethod
    def matched(cls, value) -> "Extraction":
        return cls(value, Tag.MATCHED)

    @classmethod
    def inferred(cls, value) -> "Extraction":
        return cls(value, Tag.INFERRED)

    @property
    def found(self) -> bool:
        return self.tag is not Tag.MISSING


MISSING = Extraction()


@dataclass(frozen=True)
class SubscriptionDraft:
    merchant_name: str
    amount: Decimal
    currency: str
    billing_cycle: BillingCycle
    status: SubscriptionStatus
    confidence: Confidence
    plan_name: str | None = None
    category: Category | None = None
    first_billing_date: date | None = None
    next_billing_date: date | None = None
    trial_end_date: date | None = None

    def to_dict(self) -> dict:
        """JSON-safe form stored on ProcessedMessage.extracted_data."""
        return {
            "merchant_name": self.merchant_name,
            "plan_name": self.plan_name,
            "amount": str(self.amount),
            "currency": self.currency,
            "billing_cycle": self.billing_cycle.value,
            "status": self.status.value,
            "confidence": self.confidence.value,
            "category": self.category.value if self.category else None,
            "first_billing_date": _iso(self.first_billing_date),
            "next_billing_date": _iso(self.next_billing_date),
            "trial_end_date": _iso(self.trial_end_date),
        }


@dataclass(frozen=True)
class ParseSuccess:
    data: SubscriptionDraft
    kind: Literal["success"] = "success"


@dataclass(frozen=True)
class ParseFailure:
    reason: str
    kind: Literal["failed"] = "failed"


ParseResult = ParseSuccess | ParseFailure


def _iso(value: date | None) -> str | None:
    return value.isoformat() if value else None


# ============================================================================
# Lookup tables
# ============================================================================

# Sender domain -> (brand, category). Parent domains match: account.netflix.com -> netflix.com
DOMAIN_BRANDS: dict[str, tuple[str, Category | None]] = {
    "netflix.com": ("Netflix", Category.ENTERTAINMENT),
    "spotify.com": ("Spotify", Category.ENTERTAINMENT),
    "hulu.com": ("Hulu", Category.ENTERTAINMENT),
    "disneyplus.com": ("Disney+", Category.ENTERTAINMENT),
    "youtube.com": ("YouTube", Category.ENTERTAINMENT),
    "openai.com": ("OpenAI", Category.AI_TOOLS),
    "anthropic.com": ("Anthropic", Category.AI_TOOLS),
    "midjourney.com": ("Midjourney", Category.AI_TOOLS),
    "figma.com": ("Figma", Category.DESIGN),
    "adobe.com": ("Adobe", Category.DESIGN),
    "canva.com": ("Canva", Category.DESIGN),
    "github.com": ("GitHub", Category.DEVELOPMENT),
    "gitlab.com": ("GitLab", Category.DEVELOPMENT),
    "vercel.com": ("Vercel", Category.DEVELOPMENT),
    "netlify.com": ("Netlify", Category.DEVELOPMENT),
    "heroku.com": ("Heroku", Category.DEVELOPMENT),
    "notion.so": ("Notion", Category.PRODUCTIVITY),
    "asana.com": ("Asana", Category.PRODUCTIVITY),
    "trello.com": ("Trello", Category.PRODUCTIVITY),
    "airtable.com": ("Airtable", Category.PRODUCTIVITY),
    "mixpanel.com": ("Mixpanel", Category.ANALYTICS),
    "amplitude.com": ("Amplitude", Category.ANALYTICS),
    "mailchimp.com": ("Mailchimp", Category.MARKETING),
    "hubspot.com": ("HubSpot", Category.MARKETING),
    "udemy.com": ("Udemy", Category.EDUCATION),
    "coursera.org": ("Coursera", Category.EDUCATION),
    "skillshare.com": ("Skillshare", Category.EDUCATION),
    "masterclass.com": ("MasterClass", Category.EDUCATION),
}

# Payment processors send on behalf of the real merchant
PROCESSOR_DOMAINS: dict[str, tuple[str, Category | None]] = {
    "stripe.com": ("Stripe", Category.FINANCE),
    "paypal.com": ("PayPal", Category.FINANCE),
    "apple.com": ("Apple", None),
    "google.com": ("Google", None),
}

# Merchant-name keywords -> category, checked in order
CATEGORY_KEYWORDS: list[tuple[Category, tuple[str, ...]]] = [
    (Category.AI_TOOLS, ("openai", "anthropic", "claude", "chatgpt", "midjourney", "dall-e")),
    (Category.VIDEO_EDITING, ("adobe premiere", "final cut", "davinci", "filmora")),
    (Category.DESIGN, ("figma", "canva", "adobe", "sketch", "invision")),
    (Category.PRODUCTIVITY, ("notion", "asana", "trello", "monday", "clickup", "airtable")),
    (Category.ANALYTICS, ("google analytics", "mixpanel", "amplitude", "segment")),
    (Category.MARKETING, ("mailchimp", "hubspot", "sendgrid", "convertkit")),
    (Category.DEVELOPMENT, ("github", "gitlab", "vercel", "netlify", "heroku", "aws")),
    (Category.FINANCE, ("stripe", "paypal", "quickbooks", "xero")),
    (Category.ENTERTAINMENT, ("netflix", "spotify", "hulu", "disney", "youtube")),
    (Category.EDUCATION, ("udemy", "coursera", "skillshare", "masterclass")),
]

# Display names that say nothing about the merchant
GENERIC_SENDER_NAMES = {
    "noreply", "no-reply", "no reply", "donotreply", "do not reply", "billing",
    "receipts", "receipt", "payments", "invoice", "invoices", "support", "team",
    "info", "notifications", "accounts", "account", "hello", "mailer-daemon",
}
# Trailing words stripped from display names: "Acme Billing" -> "Acme"
SENDER_NAME_SUFFIXES = re.compile(
    r"[\s,\-|]+(billing|receipts?|payments?|invoices?|team|support|accounts?|"
    r"notifications?|no-?reply|via stripe|via paypal)$",
    re.I,
)

SECOND_LEVEL_SUFFIXES = {"co", "com", "org", "net", "ac", "gov"}
MAIL_SUBDOMAIN_LABELS = {"mail", "email", "e", "em", "info", "news", "billing", "account", "accounts"}

CURRENCY_SYMBOLS = {
    "US$": "USD",
    "CA$": "CAD",
    "AU$": "AUD",
    "A$": "AUD",
    "$": "USD",
    "€": "EUR",
    "£": "GBP",
    "¥": "JPY",
    "₹": "INR",
}
CURRENCY_CODES = ("USD", "EUR", "GBP", "CAD", "AUD", "JPY", "INR", "CHF", "NZD")

# ============================================================================
# Patterns
# ============================================================================

BILLING_LANGUAGE_RE = re.compile(
    r"\b(receipts?|invoices?|subscri\w*|trial|renew\w*|billing|billed|bill|"
    r"payments?|paid|charged?|membership|order confirmation)\b",
    re.I,
)
PROMOTIONAL_RE = re.compile(
    r"(\d+\s?% off|\bsale\b|\bcoupon|\bpromo(tion)?\b|\bdeals?\b|limited time|"
    r"special offer|save up to|\bnewsletter\b|last chance|black friday|cyber monday)",
    re.I,
)
CANCELLATION_RE = re.compile(
    r"(subscription (has been |was )?(cancell?ed|ended)|membership (has been )?(cancell?ed|ended)|"
    r"cancell?ation (confirmed|confirmation)|you('ve| have) cancell?ed|sorry to see you go)",
    re.I,
)
TRIAL_RE = re.compile(r"\b(free trial|trial period|trial starts|your trial|trial ends?)\b", re.I)

_AMOUNT = r"\d{1,3}(?:,\d{3})+(?:\.\d{2})?|\d+(?:[.,]\d{2})?"
_SYMBOL = r"US\$|CA\$|AU\$|A\$|\$|€|£|¥|₹"
_CODE = "|".join(CURRENCY_CODES)
MONEY_PATTERNS = [
    # $9.99, $ 9.99 USD, US$9.99
    re.compile(rf"(?P<sym>{_SYMBOL})\s?(?P<amt>{_AMOUNT})(?:\s?(?P<code>{_CODE})\b)?"),
    # USD 9.99
    re.compile(rf"\b(?P<code>{_CODE})\s?(?P<amt>{_AMOUNT})"),
    # 9.99 USD, 9,99 €
    re.compile(rf"(?<![\d.,])(?P<amt>\d+[.,]\d{{2}})\s?(?:(?P<code>{_CODE})\b|(?P<sym>€|£))"),
]
AMOUNT_KEYWORD_RE = re.compile(
    r"(total|charged?|amount( due)?|billed|paid|price|payment of|you('ll| will) be charged|"
    r"renews? (at|for)|then)\W*(\w+\W+){0,3}$",
    re.I,
)
# Bare decimal right after a billing keyword: "Total: 15.99"
BARE_AMOUNT_RE = re.compile(
    r"\b(total|amount( due)?|charged|billed|paid)\b[:\s]+(?P<amt>\d+\.\d{2})\b",
    re.I,
)

# "a week" style phrases only count straight after a price: "$9.99 a month"
CYCLE_PATTERNS: list[tuple[BillingCycle, re.Pattern]] = [
    (BillingCycle.WEEKLY, re.compile(
        r"\bweekly\b|\bper week\b|\bevery week\b|/\s?w(?:ee)?k\b|(?<=\d)\s?a week\b", re.I)),
    (BillingCycle.MONTHLY, re.compile(
        r"\bmonthly\b|\bper month\b|\bevery month\b|/\s?mo(?:nth)?\b|(?<=\d)\s?a month\b|\bmonth-to-month\b", re.I)),
    (BillingCycle.QUARTERLY, re.compile(
        r"\bquarterly\b|\bper quarter\b|\bevery (?:3|three) months\b|/\s?qtr\b", re.I)),
    (BillingCycle.ANNUAL, re.compile(
        r"\bannual(?:ly)?\b|\byearly\b|\bper year\b|\bevery year\b|/\s?(?:yr|year)\b|(?<=\d)\s?a year\b", re.I)),
]

_MONTH = (
    r"(?:jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|jun(?:e)?|jul(?:y)?|"
    r"aug(?:ust)?|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)"
)
_DATE = (
    rf"(?P<date>{_MONTH}\.?\s+\d{{1,2}}(?:st|nd|rd|th)?,?\s+\d{{4}}"
    rf"|\d{{1,2}}(?:st|nd|rd|th)?\s+{_MONTH}\.?,?\s+\d{{4}}"
    r"|\d{4}-\d{2}-\d{2}"
    r"|\d{1,2}/\d{1,2}/\d{4})"
)
NEXT_BILLING_RE = re.compile(
    rf"(?:renews?|renewal date|will renew|next (?:billing|charge|payment)(?: date)?|"
    rf"will be (?:charged|billed))(?: on| is| date)?[:\s]+{_DATE}",
    re.I,
)
TRIAL_END_RE = re.compile(
    rf"trial (?:ends?|expires?|period ends?|will end)(?: on)?[:\s]+{_DATE}",
    re.I,
)
TRIAL_DAYS_RE = re.compile(r"(?P<days>\d{1,3})[\s-]day (?:free )?trial", re.I)
FIRST_BILLING_RE = re.compile(
    rf"first (?:charge|payment|billing)(?: date)?(?: will be)?(?: on)?[:\s]+{_DATE}",
    re.I,
)

PLAN_TIER_RE = re.compile(
    r"\b(pro|premium|plus|basic|starter|standard|enterprise|team|family|individual|business)\b",
    re.I,
)
PLAN_NAME_RE = re.compile(r"\b([A-Z][\w+]*(?: [A-Z][\w+]*)?) (?:plan|membership|tier)\b")
PLAN_NAME_FILLER = {"your", "the", "this", "new", "current"}
# "Your receipt from Figma", "Payment to Acme Inc"
SUBJECT_MERCHANT_RE = re.compile(
    r"\b(?i:receipt|invoice|payment|subscription|order)\s+(?i:from|to|for|with)\s+"
    r"(?P<name>[A-Z0-9][\w&.+' -]{1,40}?)(?:\s*[#(\-:|,]|\s+(?:is|has|was|for|on)\b|$)",
)
SUBJECT_NOISE_RE = re.compile(
    r"\b(your|the|a|an|receipt|invoice|payment|subscription|confirmation|renewal|"
    r"trial|billing|order|from|for|to|of|is|has|been|and|thank|thanks|you|new|plan)\b|[^\w\s&+.-]",
    re.I,
)


# ============================================================================
# Extraction steps
# ============================================================================


def is_billing_message(subject: str, sender: str) -> ParseFailure | None:
    """Gate: None when the headers look billing-related, else the failure."""
    if PROMOTIONAL_RE.search(subject) and not BILLING_LANGUAGE_RE.search(subject):
        return ParseFailure("Promotional message")
    header_text = f"{sender} {subject}"
    if BILLING_LANGUAGE_RE.search(header_text):
        return None
    if any(m.search(subject) for m in MONEY_PATTERNS):
        return None
    return ParseFailure("No billing language in sender or subject")


def _domain_of(address: str) -> str:
    return address.rpartition("@")[2].strip().lower().rstrip(".")


def _lookup_domain(domain: str, table: dict) -> tuple[str, Category | None] | None:
    labels = domain.split(".")
    for i in range(len(labels) - 1):
        hit = table.get(".".join(labels[i:]))
        if hit:
            return hit
    return None


def _registrable_label(domain: str) -> str | None:
    """acme.io -> acme, mail.acme.co.uk -> acme."""
    labels = [l for l in domain.split(".") if l]
    if len(labels) < 2:
        return None
    if len(labels) >= 3 and labels[-2] in SECOND_LEVEL_SUFFIXES and len(labels[-1]) == 2:
        label = labels[-3]
    else:
        label = labels[-2]
    if label in MAIL_SUBDOMAIN_LABELS:
        return None
    return label


def _clean_display_name(name: str) -> str | None:
    name = name.strip().strip('"').strip("'").strip()
    previous = None
    while name and name != previous:
        previous = name
        name = SENDER_NAME_SUFFIXES.sub("", name).strip()
    if not name or name.lower() in GENERIC_SENDER_NAMES or "@" in name:
        return None
    return name


def _subject_merchant(subject: str) -> str | None:
    m = SUBJECT_MERCHANT_RE.search(subject)
    if not m:
        return None
    name = m.group("name").strip(" .-'")
    return name or None


def _subject_token(subject: str) -> str | None:
    words = SUBJECT_NOISE_RE.sub(" ", subject).split()
    for word in words:
        if word[0].isupper() and not word.isdigit() and len(word) > 1:
            return word
    return None


def extract_merchant(sender: str, subject: str) -> Extraction:
    """
    Merchant name with its category hint, as Extraction((name, category)).
    Brand table, processor subject phrases and display names count as matched;
    domain labels and subject tokens are inferred.
    """
    display_name, address = parseaddr(sender)
    domain = _domain_of(address) if "@" in address else ""

    brand = _lookup_domain(domain, DOMAIN_BRANDS) if domain else None
    if brand:
        return Extraction.matched(brand)

    processor = _lookup_domain(domain, PROCESSOR_DOMAINS) if domain else None
    if processor:
        named = _subject_merchant(subject)
        if named:
            return Extraction.matched((named, None))

    cleaned = _clean_display_name(display_name)
    if cleaned:
        return Extraction.matched((cleaned, None))
    if processor:
        return Extraction.matched(processor)

    label = _registrable_label(domain) if domain else None
    if label:
        return Extraction.inferred((label.capitalize(), None))

    token = _subject_merchant(subject) or _subject_token(subject)
    if token:
        return Extraction.inferred((token, None))
    return MISSING


def _to_decimal(raw: str) -> Decimal | None:
    if re.fullmatch(r"\d+,\d{2}", raw):
        raw = raw.replace(",", ".")
    else:
        raw = raw.replace(",", "")
    try:
        return Decimal(raw)
    except InvalidOperation:
        return None


def _currency(match: re.Match) -> str:
    code = match.groupdict().get("code")
    if code:
        return code.upper()
    return CURRENCY_SYMBOLS.get(match.groupdict().get("sym") or "", "USD")


def extract_amount(text: str) -> tuple[Extraction, int]:
    """
    First plausible monetary token as Extraction((amount, currency)) plus its
    offset in text (-1 if none). Tokens next to billing keywords win over
    earlier unrelated ones; zero amounts are never plausible.
    """
    candidates: list[tuple[int, Decimal, str]] = []
    taken: list[tuple[int, int]] = []
    for pattern in MONEY_PATTERNS:
        for m in pattern.finditer(text):
            if any(s < m.end() and m.start() < e for s, e in taken):
                continue
            value = _to_decimal(m.group("amt"))
            if value is None or value <= 0:
                continue
            taken.append((m.start(), m.end()))
            candidates.append((m.start(), value, _currency(m)))
    candidates.sort(key=lambda c: c[0])

    for start, value, currency in candidates:
        window = text[max(0, start - KEYWORD_WINDOW):start]
        if AMOUNT_KEYWORD_RE.search(window):
            return Extraction.matched((value, currency)), start
    if candidates:
        start, value, currency = candidates[0]
        return Extraction.matched((value, currency)), start

    m = BARE_AMOUNT_RE.search(text)
    if m:
        value = _to_decimal(m.group("amt"))
        if value is not None and value > 0:
            return Extraction.inferred((value, "USD")), m.start("amt")
    return MISSING, -1


def extract_cycle(text: str, anchor: int) -> Extraction:
    """Cadence word nearest the amount token; monthly is inferred when none is present."""
    best: tuple[int, int, BillingCycle] | None = None
    for order, (cycle, pattern) in enumerate(CYCLE_PATTERNS):
        for m in pattern.finditer(text):
            distance = abs(m.start() - anchor) if anchor >= 0 else m.start()
            key = (distance, order, cycle)
            if best is None or key[:2] < best[:2]:
                best = key
    if best:
        return Extraction.matched(best[2])
    return Extraction.inferred(BillingCycle.MONTHLY)


def _parse_date(raw: str) -> date | None:
    try:
        return date_parser.parse(raw, fuzzy=False, default=datetime(2000, 1, 1)).date()
    except (ValueError, OverflowError):
        return None


def _search_date(pattern: re.Pattern, text: str) -> date | None:
    m = pattern.search(text)
    return _parse_date(m.group("date")) if m else None


def extract_dates(text: str, received_at: datetime | None) -> dict[str, date | None]:
    trial_end = _search_date(TRIAL_END_RE, text)
    if trial_end is None and received_at is not None:
        m = TRIAL_DAYS_RE.search(text)
        if m:
            trial_end = received_at.date() + timedelta(days=int(m.group("days")))
    first_billing = _search_date(FIRST_BILLING_RE, text) or trial_end
    return {
        "first_billing_date": first_billing,
        "next_billing_date": _search_date(NEXT_BILLING_RE, text),
        "trial_end_date": trial_end,
    }


def extract_status(text: str) -> SubscriptionStatus:
    if CANCELLATION_RE.search(text):
        return SubscriptionStatus.CANCELLED
    if TRIAL_RE.search(text):
        return SubscriptionStatus.TRIAL
    return SubscriptionStatus.ACTIVE


def extract_plan(subject: str, body: str) -> str | None:
    m = PLAN_TIER_RE.search(subject)
    if m:
        return m.group(1).capitalize()
    m = PLAN_NAME_RE.search(body)
    if m:
        words = [w for w in m.group(1).split() if w.lower() not in PLAN_NAME_FILLER]
        if words:
            return " ".join(words)
    return None


def infer_category(merchant_name: str) -> Category | None:
    name = merchant_name.lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in name for keyword in keywords):
            return category
    return None


def score_confidence(*extractions: Extraction) -> Confidence:
    """high when nothing was inferred, medium for one inferred field, low for more."""
    inferred = sum(1 for e in extractions if e.tag is not Tag.MATCHED)
    if inferred == 0:
        return Confidence.HIGH
    if inferred == 1:
        return Confidence.MEDIUM
    return Confidence.LOW


# ============================================================================
# Entry point
# ============================================================================


def parse_message(
    subject: str,
    sender: str,
    body: str,
    snippet: str = "",
    *,
    received_at: datetime | None = None,
) -> ParseResult:
    """Parse one message into a SubscriptionDraft, or explain why it is not one."""
    subject = subject or ""
    sender = sender or ""
    gate = is_billing_message(subject, sender)
    if gate:
        return gate

    merchant = extract_merchant(sender, subject)
    if not merchant.found:
        return ParseFailure("Could not identify merchant")

    text = f"{subject}\n{(body or snippet or '')[:MAX_SCAN_CHARS]}"
    amount, anchor = extract_amount(text)
    if not amount.found:
        return ParseFailure("Could not extract amount")

    value, currency = amount.value
    if value >= MAX_AMOUNT:
        return ParseFailure("Implausible amount")

    cycle = extract_cycle(text, anchor)
    merchant_name, brand_category = merchant.value
    merchant_name = merchant_name[:MAX_NAME_LENGTH]
    plan_name = extract_plan(subject, text)

    draft = SubscriptionDraft(
        merchant_name=merchant_name,
        plan_name=plan_name[:MAX_NAME_LENGTH] if plan_name else None,
        amount=value,
        currency=currency,
        billing_cycle=cycle.value,
        status=extract_status(text),
        confidence=score_confidence(merchant, amount, cycle),
        category=brand_category or infer_category(merchant_name),
        **extract_dates(text, received_at),
    )
    return ParseSuccess(draft)
