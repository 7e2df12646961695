"""Prompt templates for email subscription extraction.

Prompts are versioned to support cache invalidation.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..sources.base import EmailMessage

# Prompt version for cache invalidation
# v2.0: emailType classification and foundKeywords
PROMPT_VERSION = "v2.0"

# Body characters sent to the model
MAX_BODY_CHARS = 4000


@dataclass
class SubscriptionPrompt:
    """Prompt template for subscription extraction from one email.

    Attributes:
        version: Prompt version for cache invalidation.
        system_prompt: System message setting LLM behavior.
        user_template: Template for user message with placeholders.
    """

    version: str = PROMPT_VERSION

    system_prompt: str = """You are a subscription detection expert. Extract subscription information from emails.

Respond with a single JSON object and nothing else:
{
    "isSubscription": true,
    "isConfirmationEmail": true,
    "emailType": "confirmed_subscription" | "one_time_payment" | "failed_payment" | "other",
    "serviceName": "Netflix",
    "amount": 649,
    "currency": "INR",
    "billingCycle": "monthly" | "yearly" | "quarterly" | "weekly" | "one-time",
    "nextBillingDate": "YYYY-MM-DD",
    "category": "Streaming",
    "confidence": 0-100,
    "description": "brief description of what was detected",
    "foundKeywords": ["subscription confirmed"]
}

If the email is not about a subscription, respond: {"isSubscription": false}"""

    user_template: str = """Analyze this email and extract subscription information.

High-priority confirmation phrases:
- "subscription successful", "subscription started", "subscription confirmed"
- "welcome to your subscription", "your subscription is now active"
- "next billing will be on", "next payment date", "renewal date"
- "cancel anytime", "manage subscription"

Email Details:
- Subject: {subject}
- From: {sender}
- Date: {date}
- Body: {body}

Email type:
- confirmed_subscription: confirmation of a recurring subscription, welcome emails, active subscriptions
- one_time_payment: one-time purchases, single receipts, non-recurring charges
- failed_payment: payment failures, unsuccessful charges
- other: notifications, promotions, account updates

Amounts:
- Search subject and the entire body, including tables and footers
- "1,234" is 1234, not 1.234
- Prefer the recurring plan amount over setup fees or discounts
- Use null when no amount is present; never invent one

Currency: ₹/Rs/INR -> INR, $/USD -> USD, €/EUR -> EUR, £/GBP -> GBP. Use null if absent.

Billing cycle: "per month", "/month", "monthly" -> monthly; "per year", "annually" -> yearly.
Leave billingCycle null when the email does not say.

Category, one of: {categories}
- Investment: Groww, Zerodha, Upstox, mutual funds, SIP, trading apps
- Rentals: Furlenco, RentoMojo, furniture or vehicle rental
- Streaming: Netflix, Prime Video, Disney+ Hotstar, YouTube Premium
- Music: Spotify, Apple Music, Gaana, JioSaavn
- Productivity: Notion, Microsoft 365, Google Workspace, Slack
- Software: Adobe, GitHub, developer tools, SaaS

Confidence 90-100 only for emails with confirmation phrases."""

    def format_user_message(self, email: EmailMessage, categories: list[str]) -> str:
        """Format the user message with email details.

        Args:
            email: Email to analyze.
            categories: Allowed category names.

        Returns:
            Formatted user message.
        """
        return self.user_template.format(
            subject=email.subject or "(no subject)",
            sender=email.sender or "Unknown",
            date=email.date.isoformat() if email.date else "Unknown",
            body=(email.body or "")[:MAX_BODY_CHARS],
            categories=", ".join(categories),
        )
