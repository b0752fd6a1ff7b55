from __future__ import annotations

from enum import Enum
from typing import Protocol

import structlog

from .errors import AuthorizationError, NotFoundError

log = structlog.get_logger()


class OwnershipStatus(str, Enum):
    OK = "ok"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"


class CampaignDirectory(Protocol):
    """Answers whether a user owns a campaign."""

    async def verify_ownership(self, user_id: str, campaign_id: str) -> OwnershipStatus: ...


class InMemoryCampaignDirectory:
    """Campaign ownership kept in a dict of campaign id -> owner user id."""

    def __init__(self, owners: dict[str, str] | None = None) -> None:
        self._owners: dict[str, str] = dict(owners or {})

    async def verify_ownership(self, user_id: str, campaign_id: str) -> OwnershipStatus:
        owner = self._owners.get(campaign_id)
        if owner is None:
            return OwnershipStatus.NOT_FOUND
        if owner != user_id:
            return OwnershipStatus.FORBIDDEN
        return OwnershipStatus.OK


async def verify_campaign_ownership(
    directory: CampaignDirectory,
    user_id: str,
    campaign_id: str,
) -> None:
    """Raise unless ``user_id`` owns ``campaign_id``."""
    status = await directory.verify_ownership(user_id, campaign_id)
    if status is OwnershipStatus.NOT_FOUND:
        raise NotFoundError("Campaign")
    if status is OwnershipStatus.FORBIDDEN:
        log.warning("campaign_ownership_denied", campaign_id=campaign_id, user_id=user_id)
        raise AuthorizationError("You do not have permission to access this campaign")
