"""
Slack delivery for escalation summaries.

A run posts one Block Kit summary, through the bot token when one is set and
otherwise through an incoming webhook, and may attach recommendations.txt.
Every failure here is logged and reported as False; notification problems
never change a run's outcome.
"""

import logging
import os

import requests
from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

WEBHOOK_TIMEOUT = 10
UPLOAD_TIMEOUT = 30


class SlackBlock(object):
    """Accumulates mrkdwn sections and dividers for one message."""

    def __init__(self):
        self.sections = []

    def get(self):
        return {"blocks": self.sections}

    def append(self, message="", message_type="mrkdwn"):
        self.sections.append({"type": "section", "text": {"type": message_type, "text": message}})

    def add_divider(self):
        self.sections.append({"type": "divider"})

    def text(self):
        # clients that cannot render blocks show this instead
        return "\n".join(s["text"]["text"] for s in self.sections if s["type"] == "section")


class SlackClient(object):
    logger = logging.getLogger(__name__)

    def __init__(self, token="", webhook_url="", channel=""):
        self.token = token or None
        self.webhook_url = webhook_url or None
        self.channel = channel
        self.client = WebClient(token=self.token) if self.token else None
        self.response = None

    def notify(self, message="", blocks=None):
        """Deliver a summary through whichever transport is configured."""
        if self.client:
            if blocks:
                return self.post_blocks(blocks=blocks, fallback=message)
            return self.post_message(message=message)
        if self.webhook_url:
            payload = {"text": message}
            if blocks:
                payload["blocks"] = blocks
            return self.post_payload(payload)
        self.logger.debug("Slack not configured, skipping notification")
        return False

    def _target(self, channel, action):
        if not self.client:
            self.logger.error(f"Slack bot token not configured, cannot {action}")
            return None
        target = channel or self.channel
        if not target:
            self.logger.error(f"No Slack channel given, cannot {action}")
        return target or None

    def _chat(self, channel, action, **kwargs):
        target = self._target(channel, action)
        if not target:
            return False
        self.logger.info(f"Posting escalation summary to Slack channel {target}")
        try:
            self.response = self.client.chat_postMessage(channel=target, **kwargs)
        except SlackApiError as err:
            self.logger.warning(f"Slack rejected {action}: {err.response['error']}")
            return False
        return True

    def post_message(self, message="", channel=""):
        return self._chat(channel, "post message", text=message)

    def post_blocks(self, blocks=None, channel="", fallback=""):
        return self._chat(channel, "post blocks", blocks=blocks or [], text=fallback)

    def post_payload(self, payload):
        """POST a JSON payload to the incoming webhook."""
        if not self.webhook_url:
            self.logger.error("Slack webhook URL not configured")
            return False
        try:
            response = requests.post(self.webhook_url, json=payload, timeout=WEBHOOK_TIMEOUT)
            response.raise_for_status()
        except requests.exceptions.RequestException as err:
            self.logger.warning(f"Slack webhook delivery failed: {err}")
            return False
        self.logger.info("Escalation summary delivered to Slack webhook")
        return True

    def upload_file(self, file, channel="", title=None):
        """
        Attach a run artifact, normally recommendations.txt.

        Uses the three-step external upload: reserve an upload URL, POST the
        bytes to it, then complete the upload into the channel.

        Args:
            file: Path of the artifact on disk
            channel: Channel override; defaults to the configured channel
            title: Title shown in Slack; defaults to the file name

        Returns:
            bool: True once Slack confirms the upload
        """
        target = self._target(channel, "upload file")
        if not target:
            return False
        if not os.path.exists(file):
            self.logger.error(f"Artifact not found, nothing to upload: {file}")
            return False

        name = os.path.basename(file)
        size = os.path.getsize(file)
        self.logger.info(f"Uploading {name} ({size} bytes) to Slack channel {target}")
        try:
            reserved = self.client.files_getUploadURLExternal(filename=name, length=size)
            if not reserved["ok"]:
                self.logger.error(f"Slack refused upload URL: {reserved.get('error', 'unknown')}")
                return False
            with open(file, "rb") as handle:
                sent = requests.post(
                    reserved["upload_url"], files={"file": handle}, timeout=UPLOAD_TIMEOUT
                )
            if sent.status_code != 200:
                self.logger.error(f"Artifact upload returned HTTP {sent.status_code}")
                return False
            completed = self.client.files_completeUploadExternal(
                files=[{"id": reserved["file_id"], "title": title or name}],
                channel_id=target,
            )
        except SlackApiError as err:
            self.logger.warning(f"Slack rejected upload of {name}: {err.response['error']}")
            return False
        except requests.exceptions.RequestException as err:
            self.logger.warning(f"Could not upload {name} to Slack: {err}")
            return False
        if not completed["ok"]:
            self.logger.error(f"Slack did not complete upload: {completed.get('error', 'unknown')}")
            return False
        self.response = completed
        return True
