import json
import logging
import os

from dotenv import load_dotenv
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

load_dotenv()
SLACK_BOT_TOKEN = os.getenv("SLACK_BOT_TOKEN")

logger = logging.getLogger(__name__)

slack_client = AsyncWebClient(token=SLACK_BOT_TOKEN)


async def send_message(channel: str, text: str, blocks=None) -> bool:
    """Post a message to a Slack channel. Delivery problems are logged, not raised."""
    if not SLACK_BOT_TOKEN:
        logger.info("SLACK_BOT_TOKEN not set, skipping Slack delivery to %s", channel)
        return False

    try:
        if blocks:
            logger.debug("Slack blocks payload: %s", json.dumps(blocks))

        response = await slack_client.chat_postMessage(
            channel=channel,
            text=text,
            blocks=blocks
        )
        if not response["ok"]:
            logger.error("Slack API returned ok: False: %s", json.dumps(response.data))
            return False
        return True

    except SlackApiError as e:
        err = e.response.data.get("error")
        logger.error("Slack send_message error: %s", err)
        if err == "not_in_channel":
            logger.error("Hint: invite the bot to the channel with /invite @your-bot-name")
        elif err == "channel_not_found":
            logger.error("Channel %s was not found. Ensure the bot is invited to it.", channel)
        return False
