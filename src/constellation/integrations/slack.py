"""Slack Web API integration."""

import logging
from dataclasses import dataclass

from constellation.core import events
from constellation.db.models import CONFLICT, OrchestrationEvent

logger = logging.getLogger(__name__)

NOTABLE_EVENTS = {
    events.PHASE_CHANGED,
    events.PLAN_READY,
    events.PLAN_REJECTED,
    events.TASK_FAILED,
    events.MERGE_RESOLVED,
    events.STALLED,
}

_EMOJI = {
    events.PLAN_READY: ":clipboard:",
    events.PLAN_REJECTED: ":no_entry_sign:",
    events.TASK_FAILED: ":x:",
    events.STALLED: ":warning:",
}

_PHASE_EMOJI = {
    "planning": ":thinking_face:",
    "reviewing": ":eyes:",
    "executing": ":large_blue_circle:",
    "completed": ":white_check_mark:",
    "error": ":red_circle:",
    "aborted": ":black_square_for_stop:",
}


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    response = client.chat_postMessage(
        channel=channel,
        text=text,
        blocks=blocks,
    )

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def event_summary(event: OrchestrationEvent) -> str:
    """One-line plain text version of an event, used as the fallback text."""
    if event.event_type == events.PHASE_CHANGED:
        return f"Project {event.project_id} is now {event.data.get('phase')}"
    if event.event_type == events.MERGE_RESOLVED:
        outcome = event.data.get("outcome")
        verb = "Merge conflict on" if outcome == CONFLICT else "Merged"
        return f"{verb} {event.branch} in {event.project_id}"
    return f"[{event.event_type}] {event.project_id}: {event.message or ''}".rstrip()


def format_event_blocks(event: OrchestrationEvent) -> list[dict]:
    """Format an orchestration event as Slack blocks."""
    if event.event_type == events.PHASE_CHANGED:
        emoji = _PHASE_EMOJI.get(event.data.get("phase"), ":grey_question:")
    elif event.event_type == events.MERGE_RESOLVED:
        emoji = ":warning:" if event.data.get("outcome") == CONFLICT else ":twisted_rightwards_arrows:"
    else:
        emoji = _EMOJI.get(event.event_type, ":grey_question:")

    lines = [f"{emoji} *{event_summary(event)}*"]
    if event.task_ordinal is not None:
        task = event.data.get("task") or {}
        title = task.get("title")
        lines.append(f"Task {event.task_ordinal}" + (f": {title}" if title else ""))
    if event.branch and event.event_type != events.MERGE_RESOLVED:
        lines.append(f"Branch: `{event.branch}`")
    if event.message and event.event_type in (events.PLAN_REJECTED, events.TASK_FAILED, events.STALLED):
        lines.append(event.message)
    if event.event_type == events.MERGE_RESOLVED and event.data.get("details"):
        lines.append(f"Details: {event.data['details']}")

    return [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": "\n".join(lines)},
        }
    ]


class SlackSink:
    """Posts notable orchestration events to a Slack channel."""

    def __init__(self, token: str | None, channel: str):
        self.token = token
        self.channel = channel

    def deliver(self, event: OrchestrationEvent) -> None:
        if event.event_type not in NOTABLE_EVENTS:
            return
        send_message(
            self.token,
            self.channel,
            event_summary(event),
            blocks=format_event_blocks(event),
        )
