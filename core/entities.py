"""
Campaign and flow listing for the reporting window.
"""
from datetime import datetime
from typing import Any, Dict, List

from core.config import ReportConfig, config as app_config
from core.exceptions import KlaviyoError
from core.models import Campaign, Flow, Message
from core.observability import get_logger

logger = get_logger(__name__)


def attach_messages(campaigns: List[Campaign], included: List[Dict[str, Any]]) -> None:
    """
    Resolve each campaign's message ids against the `included` messages.

    Message order follows the campaign's relationship list; included
    messages that point back at a campaign without being listed on it
    are appended after those.
    """
    messages = {}
    for item in included:
        if item.get("type") == "campaign-message" and item.get("id"):
            message = Message.from_api(item)
            messages[message.id] = message

    for campaign in campaigns:
        ordered = list(dict.fromkeys(campaign.message_ids))
        for message in messages.values():
            if message.campaign_id == campaign.id and message.id not in ordered:
                ordered.append(message.id)

        campaign.message_ids = ordered
        campaign.messages = [
            messages.get(message_id) or Message(id=message_id, label=message_id, campaign_id=campaign.id)
            for message_id in ordered
        ]


class EntityFetcher:
    """
    Lists the campaigns and flows a report covers.

    Failures on the primary channel propagate; failures on secondary
    channels are absorbed as "no campaigns" and recorded in `warnings`.
    """

    def __init__(self, client, report_config: ReportConfig = None):
        self.client = client
        self.report_config = report_config or app_config.report
        self.warnings: List[str] = []

    async def list_campaigns(self, window_start: datetime) -> List[Campaign]:
        """
        Campaigns of every configured channel active since `window_start`.

        Campaigns returned under several channels are kept once (first wins).
        """
        campaigns: List[Campaign] = []
        seen = set()

        for channel in self.report_config.channels:
            try:
                page = await self.client.get_campaigns(channel, window_start)
            except KlaviyoError as e:
                if channel == self.report_config.primary_channel:
                    raise
                logger.warning(
                    f"Skipping {channel} campaigns: {e}",
                    extra={"channel": channel},
                )
                self.warnings.append(f"{channel} campaigns unavailable: {e}")
                continue

            listed = [Campaign.from_api(item, channel=channel) for item in page.items]
            attach_messages(listed, page.included)
            logger.info(f"Fetched {len(listed)} {channel} campaigns")

            for campaign in listed:
                if campaign.id in seen:
                    continue
                seen.add(campaign.id)
                campaigns.append(campaign)

        fresh = [
            c for c in campaigns
            if c.last_activity is not None and c.last_activity >= window_start
        ]
        if len(fresh) != len(campaigns):
            logger.info(f"Dropped {len(campaigns) - len(fresh)} campaigns outside the window")
        return fresh

    async def list_flows(self) -> List[Flow]:
        """Every flow that is not a draft."""
        page = await self.client.get_flows()
        flows = [Flow.from_api(item) for item in page.items]
        active = [flow for flow in flows if not flow.is_draft]
        logger.info(
            f"Fetched {len(flows)} flows, {len(flows) - len(active)} drafts excluded"
        )
        return active

    @staticmethod
    def build_message_map(campaigns: List[Campaign]) -> Dict[str, List[str]]:
        """
        campaign id -> ordered message ids.

        Campaigns without discoverable messages map to an empty list;
        the report falls back to the campaign id for engagement lookups.
        """
        return {campaign.id: list(campaign.message_ids) for campaign in campaigns}
