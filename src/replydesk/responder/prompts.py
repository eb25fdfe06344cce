"""Prompt templates and response parsing for the reply pipeline.

Provides the prompts for each oracle call made while handling one email:
- Analysis: category, intent, importance and language as JSON
- Selection: pick one candidate template by index, or none
- Personalization: fill user details into the chosen template
- Free-form: draft a reply when no template applies
- Language detection: ISO 639-1 code only

Every JSON reply may arrive wrapped in a markdown fence; the parsers strip
it before decoding.

Usage:
    from replydesk.responder.prompts import build_analysis_prompt, parse_analysis_response

    prompt = build_analysis_prompt(email, categories, product_name="Flareflow")
    data = parse_analysis_response(oracle.complete([user_message(prompt)]))
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import regex

from replydesk.core.errors import AnalysisParseError, SelectionParseError
from replydesk.core.logging import get_logger
from replydesk.oracle.base import strip_code_fence
from replydesk.responder.models import Selection, SelectionConfidence, coerce_enum

if TYPE_CHECKING:
    from replydesk.mail.models import ProcessedEmail
    from replydesk.responder.models import AnalysisResult
    from replydesk.templates.retriever import TemplateMatch

logger = get_logger(__name__)

# Characters of the email body shown to the personalization and language prompts
PERSONALIZE_EXCERPT_CHARS = 300
LANGUAGE_EXCERPT_CHARS = 500

TRANSLATION_SEPARATOR = "━" * 40
TRANSLATION_LABELS: dict[str, str] = {
    "zh": "📝 中文翻译（仅供内部参考）：",
}
LANGUAGE_CODE_PATTERN = regex.compile(r"^[a-z]{2}")


# ---------------------------------------------------------------------------
# JSON schemas (shown to the oracle as response format examples)
# ---------------------------------------------------------------------------

ANALYSIS_JSON_SCHEMA = """\
{
  "language": "en",
  "category": "<one exact value from the category list>",
  "intent": "refund_request",
  "keywords": ["refund", "charged twice"],
  "suggestedTemplate": "<short scenario description, or null>",
  "sentiment": "negative",
  "priority": "high",
  "isImportant": true,
  "suggestedActions": ["Check the payment record"],
  "reasoning": "<one or two sentences>"
}\
"""

SELECTION_JSON_SCHEMA = """\
{
  "selectedIndex": 0,
  "reasoning": "<one or two sentences>",
  "confidence": "high"
}\
"""

INTENT_DEFINITIONS = """\
- refund_request: the user wants their money back (refund, chargeback, \
"return my payment"). NOT the same as restoring a purchase.
- cancel_subscription: the user wants to stop future charges or turn off \
auto-renewal.
- restore_purchase: the user paid but the membership, coins or episodes are \
missing and they want access restored. They are NOT asking for a refund.
- activate_membership: the user needs a membership activated, upgraded or a \
code redeemed.
- ad_rewards: rewards for watching ads were not credited. These users never \
paid, so payment proof (receipts, order numbers) does not apply.
- technical_issue: playback, loading, buffering, crashes, errors or bugs.
- account_issue: login, password, account binding or deletion.
- content_request: asks for specific shows, episodes, subtitles or languages.
- feedback: suggestions, praise or complaints without a concrete request.
- inquiry: general questions about the product, pricing or policies.
- other: none of the above.\
"""


# ---------------------------------------------------------------------------
# Prompt templates
# ---------------------------------------------------------------------------

_ANALYSIS_TEMPLATE = """\
Analyze this customer support email and determine whether it requires a \
response from the {product_name} support team.

Email Details:
From: {sender}
Subject: {subject}
Content: {content}

Tasks:

1. Language: the ISO 639-1 code of the language the customer wrote in.

2. Category: choose EXACTLY ONE from this list (must match exactly):
{categories}

3. Intent: choose EXACTLY ONE code. Read what the customer actually asks \
for, not just which words appear:
{intents}

4. Keywords: the 3-8 words or short phrases that best describe the request.

5. Suggested template: a short description of the kind of canned reply that \
would fit, or null.

6. Sentiment: positive, neutral, negative, or frustrated.

7. Priority: low, medium, high, or urgent.

8. Is Important - mark as FALSE (skip) if the email is:
   - A system notification from another platform (e.g. Dailymotion, TikTok, \
copyright notices)
   - Marketing, newsletters or promotional content
   - An automated reply or confirmation
   - An internal company email
   - Spam
   - NOT from an actual {product_name} user

   Mark as TRUE (needs reply) if it is from a real user asking for help, \
reporting a bug, asking about subscriptions or payments, or giving feedback \
about {product_name}.

9. Suggested actions for the support agent.

10. Reasoning: one or two sentences explaining the intent you chose.

CONSISTENCY RULES:
- A refund or cancellation intent must never be paired with a category or \
suggested template about restoring or activating a purchase, and vice versa.
- An ad_rewards intent must never lead to requesting receipts, order numbers \
or other payment proof.
- The category MUST be one of the exact values from the list above.
- Keywords MUST be a JSON array of strings.

Respond with ONLY valid JSON (no markdown fences, no explanatory text) \
matching this schema:

{json_schema}\
"""

_SELECTION_TEMPLATE = """\
You are choosing a pre-approved reply template for a customer support email.

Email:
From: {sender}
Subject: {subject}
Content: {content}

Analysis:
Category: {category}
Intent: {intent}
Keywords: {keywords}

Candidate templates (ranked by keyword overlap, best first):
{candidates}

Think step by step:
1. What is the customer actually asking for?
2. Which candidate, if any, answers exactly that request?
3. Does that candidate contradict the intent (for example, refund wording \
for a customer who wants a purchase restored, or a request for payment proof \
from a customer asking about ad rewards)?

Rules:
- Do NOT select a template just because some keywords overlap. It must \
address the customer's actual need.
- Never select a template whose scenario contradicts the intent above.
- If no candidate fits, set "selectedIndex" to null. A human will reply instead.
- "selectedIndex" is the number shown in brackets.

Respond with ONLY valid JSON (no markdown fences, no explanatory text) \
matching this schema:

{json_schema}\
"""

_PERSONALIZE_TEMPLATE = """\
You are a customer support assistant. You have a pre-approved response \
template below. Your task is to personalize it by:

1. Keeping the template structure and main content EXACTLY as is
2. Only filling in or adjusting user-specific details such as the user's \
name, order ID, device or app version
3. Acknowledging information the user already provided if the template asks \
for it
4. Keeping the same tone, structure, and language ({language})

Intent alignment (the customer's intent is "{intent}"):
- Never add refund wording to a reply for a customer who wants a purchase \
restored or a membership activated.
- Never offer restoration or activation to a customer who asked for a refund \
or cancellation.
- Never ask a customer about ad rewards for receipts, order numbers or other \
payment proof.
{translation_instructions}
IMPORTANT: Do NOT rewrite or change the template significantly. Only make \
minimal adjustments to personalize it.

Template:
{template}

User's Email Subject: {subject}
User's Email Content (first {excerpt_chars} chars): {excerpt}
{details}
Personalized Response:\
"""

_FREE_FORM_SYSTEM_TEMPLATE = """\
You are a helpful customer support assistant for {product_name}, a streaming \
platform service.
Your role is to provide professional, empathetic, and accurate responses to \
customer inquiries.

Guidelines:
- Be polite, professional, and empathetic
- Provide clear and concise answers
- If you don't know something, acknowledge it and suggest escalation
- Never promise refunds, compensation or account changes
- Use proper formatting for readability\
"""

_LANGUAGE_TEMPLATE = """\
Detect the primary language of this email. Reply with ONLY the two-letter \
ISO 639-1 language code (e.g., "en", "zh", "es", "pt", "fr").

Subject: {subject}
Content: {excerpt}

Language code:\
"""

_TRANSLATION_TEMPLATE = """
5. IMPORTANT: After the response in {language}, add a translation for \
internal review:
   - Add a separator line: {separator}
   - Add the label: {label}
   - Provide a natural translation of the response into {internal_language}
"""


# ---------------------------------------------------------------------------
# Prompt builders
# ---------------------------------------------------------------------------


def build_analysis_prompt(
    email: ProcessedEmail,
    categories: Sequence[str],
    product_name: str,
) -> str:
    """Build the analysis prompt for one email.

    Args:
        email: Cleaned email
        categories: Allowed category names
        product_name: Product named in the importance rules

    Returns:
        Complete prompt string
    """
    return _ANALYSIS_TEMPLATE.format(
        product_name=product_name,
        sender=email.sender,
        subject=email.subject,
        content=email.text,
        categories="\n".join(f"   - {c}" for c in categories),
        intents=INTENT_DEFINITIONS,
        json_schema=ANALYSIS_JSON_SCHEMA,
    )


def format_candidates(matches: Sequence[TemplateMatch]) -> str:
    """Render candidates as indexed lines for the selection prompt."""
    lines = []
    for index, match in enumerate(matches):
        keywords = ", ".join(match.template.keywords) or "(none)"
        lines.append(
            f"[{index}] scenario: {match.template.scenario} | "
            f"keywords: {keywords} | score: {match.score:g}"
        )
    return "\n".join(lines)


def build_selection_prompt(
    email: ProcessedEmail,
    analysis: AnalysisResult,
    matches: Sequence[TemplateMatch],
) -> str:
    """Build the template-selection prompt.

    Args:
        email: Cleaned email
        analysis: Analysis of the email
        matches: Candidates in ranked order (index 0 is best)

    Returns:
        Complete prompt string
    """
    return _SELECTION_TEMPLATE.format(
        sender=email.sender,
        subject=email.subject,
        content=email.text,
        category=analysis.category,
        intent=analysis.intent.value,
        keywords=", ".join(analysis.keywords) or "(none)",
        candidates=format_candidates(matches),
        json_schema=SELECTION_JSON_SCHEMA,
    )


def translation_label(internal_language: str) -> str:
    """Label that introduces the internal translation in a reply."""
    return TRANSLATION_LABELS.get(
        internal_language,
        f"📝 Translation ({internal_language}, internal reference only):",
    )


def translation_instructions(language: str, internal_language: str | None) -> str:
    """Return the internal-translation instructions, or "" when not needed.

    Args:
        language: Reply language
        internal_language: Language of the support team, None to disable
    """
    if not internal_language or _same_language(language, internal_language):
        return ""
    return _TRANSLATION_TEMPLATE.format(
        language=language,
        separator=TRANSLATION_SEPARATOR,
        label=translation_label(internal_language),
        internal_language=internal_language,
    )


def format_email_details(email: ProcessedEmail) -> str:
    """List the extracted metadata fields that are present, one per line."""
    fields = (
        ("App Version", email.app_version),
        ("Device", email.device_info),
        ("Order ID", email.order_id),
        ("User ID", email.user_id),
    )
    return "".join(f"{name}: {value}\n" for name, value in fields if value)


def build_personalize_prompt(
    template_text: str,
    email: ProcessedEmail,
    language: str,
    intent: str,
    internal_language: str | None = None,
) -> str:
    """Build the personalization prompt for a selected template.

    Args:
        template_text: Template text in the reply language
        email: Cleaned email
        language: Reply language code
        intent: Analyzed intent code
        internal_language: Append-translation language, None to disable

    Returns:
        Complete prompt string
    """
    return _PERSONALIZE_TEMPLATE.format(
        language=language,
        intent=intent,
        translation_instructions=translation_instructions(language, internal_language),
        template=template_text,
        subject=email.subject,
        excerpt_chars=PERSONALIZE_EXCERPT_CHARS,
        excerpt=email.text[:PERSONALIZE_EXCERPT_CHARS],
        details=format_email_details(email),
    )


def build_free_form_system_prompt(product_name: str) -> str:
    return _FREE_FORM_SYSTEM_TEMPLATE.format(product_name=product_name)


def build_free_form_user_prompt(
    email: ProcessedEmail,
    language: str,
    internal_language: str | None = None,
) -> str:
    """Build the user prompt for a reply drafted without a template.

    Args:
        email: Cleaned email
        language: Reply language code
        internal_language: Append-translation language, None to disable

    Returns:
        Complete prompt string
    """
    parts = [
        "Please draft a response to this customer support email:\n",
        f"From: {email.sender}",
        f"Subject: {email.subject}",
    ]
    details = format_email_details(email).rstrip("\n")
    if details:
        parts.append(details)
    parts.append(f"\nMessage:\n{email.text}")
    parts.append(f"\nDetected Language: {language}")
    parts.append(f"\nPlease respond in {language} language.")

    prompt = "\n".join(parts)
    if internal_language and not _same_language(language, internal_language):
        prompt += (
            f"\n\nIMPORTANT: After your response in {language}, add:\n"
            f"- A separator line: {TRANSLATION_SEPARATOR}\n"
            f"- The label: {translation_label(internal_language)}\n"
            f"- A natural translation of your response into {internal_language}"
        )
    return prompt


def build_language_prompt(email: ProcessedEmail) -> str:
    return _LANGUAGE_TEMPLATE.format(
        subject=email.subject,
        excerpt=email.text[:LANGUAGE_EXCERPT_CHARS],
    )


def _same_language(a: str, b: str) -> bool:
    """Compare language codes by their primary subtag ('zh-CN' == 'zh')."""
    return a.split("-")[0].lower() == b.split("-")[0].lower()


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def _decode_json_object(raw_text: str) -> dict[str, Any] | None:
    """Strip fences and decode a JSON object, or return None."""
    try:
        cleaned = strip_code_fence(raw_text)
        if not cleaned:
            return None
        # Deep nesting overflows the decoder stack
        parsed = json.loads(cleaned)
    except (json.JSONDecodeError, RecursionError, TimeoutError):
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_analysis_response(raw_text: str) -> dict[str, Any]:
    """Decode the analysis reply into a dict.

    Args:
        raw_text: Raw oracle reply

    Returns:
        Decoded JSON object (fields are validated by the analyzer)

    Raises:
        AnalysisParseError: If the reply is not a JSON object
    """
    parsed = _decode_json_object(raw_text)
    if parsed is None:
        raise AnalysisParseError(
            f"Analysis reply is not a JSON object. Preview: {raw_text[:200]!r}",
            raw_text=raw_text,
        )
    return parsed


def parse_selection_response(raw_text: str, candidate_count: int) -> Selection:
    """Decode the selection reply.

    Args:
        raw_text: Raw oracle reply
        candidate_count: Number of candidates shown (valid indexes are
            0..candidate_count-1)

    Returns:
        The oracle's verdict (index None means no candidate fits)

    Raises:
        SelectionParseError: If the reply is not a JSON object, lacks
            selectedIndex, or names an index outside the candidate list
    """
    parsed = _decode_json_object(raw_text)
    if parsed is None:
        raise SelectionParseError(
            f"Selection reply is not a JSON object. Preview: {raw_text[:200]!r}",
            raw_text=raw_text,
        )
    if "selectedIndex" not in parsed:
        raise SelectionParseError(
            "Selection reply has no 'selectedIndex' field",
            raw_text=raw_text,
        )

    reasoning = str(parsed.get("reasoning") or "").strip()
    confidence = coerce_enum(
        SelectionConfidence,
        parsed.get("confidence"),
        SelectionConfidence.NONE,
        "confidence",
    )

    raw_index = parsed["selectedIndex"]
    if raw_index is None:
        return Selection(index=None, reasoning=reasoning, confidence=confidence)

    index = _coerce_index(raw_index)
    if index is None or not 0 <= index < candidate_count:
        raise SelectionParseError(
            f"Selection index {raw_index!r} is outside 0..{candidate_count - 1}",
            raw_text=raw_text,
        )
    return Selection(index=index, reasoning=reasoning, confidence=confidence)


def _coerce_index(value: Any) -> int | None:
    """Accept ints, integral floats and digit strings; reject everything else."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def parse_language_code(raw_text: str, default: str = "en") -> str:
    """Extract a two-letter language code from the language-detection reply."""
    cleaned = raw_text.strip().strip("\"'`").lower()
    match = LANGUAGE_CODE_PATTERN.match(cleaned, timeout=1)
    return match.group(0) if match else default
