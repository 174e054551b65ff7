"""Shared notification formatting helpers.

Keeping formatting here prevents drift between adapters and keeps messages
consistent regardless of delivery channel. Recipients never see a numeric
confidence or similarity score, so justifications are scrubbed of anything
that looks like one.
"""

from __future__ import annotations

import html
import re

from needmatch.core.models import OutboundMessage

_PERCENT_RE = re.compile(r"\s*\(?\b\d+(?:[.,]\d+)?\s*%\s*(?:match|similar(?:ity)?|confiden(?:ce|t)|relevan(?:ce|t))?\)?", re.I)
_SCORE_RE = re.compile(
    r"\s*\(?\b(?:score|similarity|confidence|relevance)\s*[:=]?\s*\d+(?:[.,]\d+)?\)?", re.I
)

DIVIDER = "──────────────"


def scrub_scores(text: str) -> str:
    """Remove percentages and score-like figures from free text."""

    text = _PERCENT_RE.sub("", text)
    text = _SCORE_RE.sub("", text)
    return re.sub(r"[ \t]{2,}", " ", text).strip()


def _format_html(message: OutboundMessage) -> str:
    """Create the HTML notification body used by the Bot API adapter."""

    parts = [f"<b>{html.escape(message.title)}</b>"]
    if message.category:
        parts.append(f"<b>Category:</b> {html.escape(message.category)}")
    parts.extend(
        [
            DIVIDER,
            "",
            html.escape(message.body),
            "",
            "<b>Why you:</b>",
            html.escape(scrub_scores(message.why_relevant)),
            DIVIDER,
        ]
    )
    return "\n".join(parts)


def _format_plain(message: OutboundMessage) -> str:
    # Push notifications render plain text only.
    why = scrub_scores(message.why_relevant)
    return f"{message.body}\n\nWhy you: {why}" if why else message.body


def format_notification(message: OutboundMessage, mode: str) -> str:
    """Return the notification formatted for the requested mode."""

    if mode == "html":
        return _format_html(message)
    if mode == "plain":
        return _format_plain(message)
    raise ValueError(f"Unsupported notification format: {mode}")
