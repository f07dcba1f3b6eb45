"""Webhook management utilities for agent identities.

Every agent owns one webhook in its channel. The webhook carries the
agent's name and avatar, so messages executed through it appear as the
agent itself.
"""

from __future__ import annotations

import base64
import logging
from typing import Optional

import hikari

logger = logging.getLogger(__name__)

# Discord error code for a missing permission
MISSING_PERMISSIONS_CODE = 50013


def avatar_resource(avatar_data: Optional[str], mime_type: Optional[str]) -> Optional[hikari.Bytes]:
    """Build an uploadable avatar from stored base64 data."""
    if not avatar_data or not mime_type:
        return None
    extension = mime_type.split("/")[-1] or "png"
    return hikari.Bytes(base64.b64decode(avatar_data), f"avatar.{extension}", mimetype=mime_type)


async def create_agent_webhook(
    rest: hikari.api.RESTClient,
    channel_id: int | str,
    name: str,
    avatar: Optional[hikari.Bytes] = None,
    reason: str = "Created for agent"
) -> hikari.IncomingWebhook:
    """Create the webhook an agent speaks through.

    Raises:
        hikari.ForbiddenError: If the bot cannot manage webhooks in the channel
        hikari.HTTPError: If Discord rejects the request
    """
    webhook = await rest.create_webhook(
        channel=int(channel_id),
        name=name,
        avatar=avatar if avatar is not None else hikari.UNDEFINED,
        reason=reason
    )
    logger.info(f"Created webhook {webhook.id} for agent {name} in channel {channel_id}")
    return webhook


async def edit_agent_webhook(
    rest: hikari.api.RESTClient,
    webhook_id: int | str,
    webhook_token: str,
    name: str,
    avatar: Optional[hikari.Bytes] = None
) -> bool:
    """Update the name and avatar of an agent's webhook.

    Returns:
        True if the webhook was updated, False otherwise
    """
    try:
        await rest.edit_webhook(
            int(webhook_id),
            token=webhook_token,
            name=name,
            avatar=avatar,
        )
        return True
    except hikari.NotFoundError:
        logger.warning(
            f"Webhook {webhook_id} for agent {name} not found. It may need /agent refresh."
        )
        return False
    except hikari.HTTPError as e:
        logger.warning(f"Could not edit webhook {webhook_id} for agent {name}: {e}")
        return False


async def delete_agent_webhook(
    rest: hikari.api.RESTClient,
    webhook_id: int | str,
    webhook_token: Optional[str] = None
) -> bool:
    """Delete an agent's webhook.

    Returns:
        True if the webhook was deleted, False if it was already gone or
        could not be deleted
    """
    try:
        await rest.delete_webhook(
            int(webhook_id),
            token=webhook_token if webhook_token else hikari.UNDEFINED,
        )
        return True
    except hikari.NotFoundError:
        logger.warning(f"Webhook {webhook_id} was already deleted from Discord")
        return False
    except hikari.HTTPError as e:
        logger.warning(f"Could not delete webhook {webhook_id}: {e}")
        return False


async def send_webhook_message(
    rest: hikari.api.RESTClient,
    webhook_id: int | str,
    webhook_token: str,
    content: str
) -> bool:
    """Send a message through an agent's webhook.

    Returns:
        True if message was sent successfully, False otherwise
    """
    try:
        await rest.execute_webhook(
            webhook=int(webhook_id),
            token=webhook_token,
            content=content,
        )
        return True

    except hikari.BadRequestError as e:
        logger.error(f"Bad request sending webhook message: {e}")
        return False
    except hikari.ForbiddenError as e:
        logger.error(f"Forbidden sending webhook message: {e}")
        return False
    except hikari.NotFoundError as e:
        logger.error(f"Webhook not found: {e}")
        return False
    except Exception as e:
        logger.error(f"Error sending webhook message: {e}")
        return False


def is_missing_permissions(error: hikari.HTTPError) -> bool:
    """Check if a Discord error means the bot lacks a permission."""
    if isinstance(error, hikari.ForbiddenError):
        return True
    return getattr(error, "code", None) == MISSING_PERMISSIONS_CODE
