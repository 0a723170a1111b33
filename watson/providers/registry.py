"""Closed mapping from provider to adapter."""

from typing import Optional

import requests

from ..cancellation import CancellationToken
from ..config import Config
from ..models import Provider
from .base import ProviderAdapter
from .google import GoogleAdapter
from .icloud import ICloudAdapter

__all__ = ["create_adapters"]


def create_adapters(
    config: Config,
    cancel_token: Optional[CancellationToken] = None,
    session: Optional[requests.Session] = None,
) -> dict[Provider, ProviderAdapter]:
    """Build one adapter per supported provider.

    Args:
        config: Application configuration
        cancel_token: Shutdown token shared with the scheduler
        session: Optional requests session (for dependency injection/testing)
    """
    common = {
        "timeout": config.sync.request_timeout,
        "session": session,
        "cancel_token": cancel_token,
    }
    return {
        Provider.ICLOUD: ICloudAdapter(base_url=config.icloud.caldav_url, **common),
        Provider.GOOGLE: GoogleAdapter(settings=config.google, **common),
    }
