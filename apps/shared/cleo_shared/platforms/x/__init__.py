"""X (Twitter) publishing client."""

from cleo_shared.platforms.x.client import XClient

__all__ = ["XClient"]
