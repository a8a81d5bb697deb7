"""Calendar provider adapters."""
from calsync.providers.base import CalendarProvider
from calsync.providers.caldav_client import CalDAVProvider
from calsync.providers.profiles import ProviderProfile, detect_provider
from calsync.providers.session_cache import ProviderSessionCache

__all__ = ["CalendarProvider", "CalDAVProvider", "ProviderProfile", "ProviderSessionCache", "detect_provider"]
