"""
Connector selection by connection kind and FEED_MODE.
"""
from typing import Optional

from app.config import Settings, get_settings
from app.errors import InvalidStateError
from app.integrations.base import FeedConnector
from app.integrations.card_feed import CardFeedConnector
from app.integrations.fake_feed import FakeFeedConnector
from app.integrations.open_banking import OpenBankingConnector
from app.models import SOURCE_BANK_FEED, SOURCE_CARD_FEED


def build_connector(connection_kind: str, settings: Optional[Settings] = None) -> FeedConnector:
    """
    Return the connector for a linked account's connection kind.

    Raises:
        InvalidStateError: MANUAL accounts, or live mode without client credentials
    """
    settings = settings or get_settings()

    if connection_kind not in (SOURCE_BANK_FEED, SOURCE_CARD_FEED):
        raise InvalidStateError(f"Accounts with connection kind {connection_kind} cannot be synchronized.")

    if settings.feed_mode == "fake":
        return FakeFeedConnector(source=connection_kind)

    if connection_kind == SOURCE_BANK_FEED:
        if not settings.open_banking_client_id or not settings.open_banking_client_secret:
            raise InvalidStateError(
                "Open banking credentials not configured. "
                "Set OPEN_BANKING_CLIENT_ID and OPEN_BANKING_CLIENT_SECRET."
            )
        return OpenBankingConnector(
            base_url=settings.open_banking_base_url,
            client_id=settings.open_banking_client_id,
            client_secret=settings.open_banking_client_secret,
            redirect_uri=settings.open_banking_redirect_uri,
        )

    if not settings.card_feed_client_id or not settings.card_feed_client_secret:
        raise InvalidStateError(
            "Card feed credentials not configured. Set CARD_FEED_CLIENT_ID and CARD_FEED_CLIENT_SECRET."
        )
    return CardFeedConnector(
        base_url_template=settings.card_feed_base_url_template,
        client_id=settings.card_feed_client_id,
        client_secret=settings.card_feed_client_secret,
        redirect_uri=settings.card_feed_redirect_uri,
    )
