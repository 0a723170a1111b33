"""Providers module - CalDAV (iCloud) and OAuth2 REST (Google) adapters."""

from .base import ProviderAdapter
from .google import GoogleAdapter
from .icloud import ICloudAdapter
from .registry import create_adapters

__all__ = ["ProviderAdapter", "GoogleAdapter", "ICloudAdapter", "create_adapters"]
