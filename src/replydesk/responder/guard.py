"""Post-hoc check that a selected template does not contradict the intent.

The selection prompt already tells the oracle not to pick, say, a refund
template for a customer who wants a purchase restored. This guard checks
the same rule in code against the template's scenario and keywords, so an
oracle that ignores the instruction produces a manual-review notice
instead of a wrong reply.

Only template metadata is inspected. Template body text routinely mentions
related topics ("if you would rather have a refund...") and is not a
reliable signal.
"""

from __future__ import annotations

from dataclasses import dataclass

from replydesk.responder.models import Intent
from replydesk.templates.models import Template

REFUND_TERMS: tuple[str, ...] = ("refund", "退款", "money back", "chargeback")
RESTORE_TERMS: tuple[str, ...] = ("restore", "恢复", "activate", "激活", "reactivat")
PAYMENT_PROOF_TERMS: tuple[str, ...] = (
    "receipt",
    "order number",
    "transaction id",
    "payment proof",
    "凭证",
    "订单号",
)

# Intent -> (label, terms a matching template must not mention)
CONFLICTING_TERMS: dict[Intent, tuple[str, tuple[str, ...]]] = {
    Intent.RESTORE_PURCHASE: ("refund", REFUND_TERMS),
    Intent.ACTIVATE_MEMBERSHIP: ("refund", REFUND_TERMS),
    Intent.REFUND_REQUEST: ("restore/activate", RESTORE_TERMS),
    Intent.CANCEL_SUBSCRIPTION: ("restore/activate", RESTORE_TERMS),
    Intent.AD_REWARDS: ("payment proof", PAYMENT_PROOF_TERMS),
}


@dataclass(frozen=True, slots=True)
class GuardVerdict:
    """Outcome of an intent check.

    Attributes:
        allowed: True if the template may be used for the intent
        reason: Why it was rejected ("" when allowed)
    """

    allowed: bool
    reason: str = ""


def check_template_intent(template: Template, intent: Intent) -> GuardVerdict:
    """Check a template's scenario and keywords against an intent.

    Args:
        template: Candidate template
        intent: Analyzed intent

    Returns:
        GuardVerdict; intents without conflict rules always pass
    """
    rule = CONFLICTING_TERMS.get(intent)
    if rule is None:
        return GuardVerdict(allowed=True)

    label, terms = rule
    haystack = " ".join((template.scenario, *template.keywords)).lower()
    for term in terms:
        if term in haystack:
            return GuardVerdict(
                allowed=False,
                reason=(
                    f"template {template.id} mentions '{term}' ({label}), "
                    f"which contradicts intent {intent.value}"
                ),
            )
    return GuardVerdict(allowed=True)
