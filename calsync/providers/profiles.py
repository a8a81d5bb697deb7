"""
Provider profiles.

A profile is resolved once, when an account is connected: either by matching
the server host against the table below or by the CalDAV discovery handshake
for unknown hosts. Everything after that reads capability flags off the
profile instead of switching on the provider name.
"""

import logging
import re
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Tuple
from urllib.parse import quote, urlparse

from calsync.exceptions import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderProfile:
    """Endpoints and capability flags for one CalDAV back-end."""
    name: str
    server_url: str
    principal_url: Optional[str] = None
    calendar_home_url: Optional[str] = None
    sync_collection: bool = False
    scheduling: bool = False
    requires_app_password: bool = False
    needs_discovery: bool = False

    def with_endpoints(self, principal_url: str, calendar_home_url: str) -> "ProviderProfile":
        return replace(self, principal_url=principal_url, calendar_home_url=calendar_home_url, needs_discovery=False)


def _icloud(server_url: str, username: str) -> ProviderProfile:
    # iCloud assigns numeric DSIDs; the principal is found by discovery
    # against caldav.icloud.com, which is fast and always succeeds.
    return ProviderProfile(
        name="icloud",
        server_url="https://caldav.icloud.com",
        sync_collection=True,
        scheduling=True,
        requires_app_password=True,
        needs_discovery=True,
    )


def _yahoo(server_url: str, username: str) -> ProviderProfile:
    user = quote(username, safe="@")
    return ProviderProfile(
        name="yahoo",
        server_url="https://caldav.calendar.yahoo.com",
        principal_url=f"https://caldav.calendar.yahoo.com/dav/{user}/principal/",
        calendar_home_url=f"https://caldav.calendar.yahoo.com/dav/{user}/Calendar/",
        sync_collection=False,
        requires_app_password=True,
    )


def _google(server_url: str, username: str) -> ProviderProfile:
    user = quote(username, safe="@")
    return ProviderProfile(
        name="google",
        server_url="https://apidata.googleusercontent.com",
        principal_url=f"https://apidata.googleusercontent.com/caldav/v2/{user}/user",
        calendar_home_url=f"https://apidata.googleusercontent.com/caldav/v2/{user}/",
        sync_collection=True,
    )


def _fastmail(server_url: str, username: str) -> ProviderProfile:
    user = quote(username, safe="@")
    return ProviderProfile(
        name="fastmail",
        server_url="https://caldav.fastmail.com",
        principal_url=f"https://caldav.fastmail.com/dav/principals/user/{user}/",
        calendar_home_url=f"https://caldav.fastmail.com/dav/calendars/user/{user}/",
        sync_collection=True,
        scheduling=True,
        requires_app_password=True,
    )


# (host pattern, username pattern, builder); first match wins
KNOWN_PROVIDERS: List[Tuple[re.Pattern, Optional[re.Pattern], Callable[[str, str], ProviderProfile]]] = [
    (re.compile(r"(^|\.)icloud\.com$|(^|\.)me\.com$"), re.compile(r"@(icloud|me|mac)\.com$"), _icloud),
    (re.compile(r"(^|\.)yahoo\.com$"), re.compile(r"@yahoo\."), _yahoo),
    (re.compile(r"(^|\.)googleusercontent\.com$|(^|\.)google\.com$"), None, _google),
    (re.compile(r"(^|\.)fastmail\.com$"), None, _fastmail),
]


def detect_provider(server_url: Optional[str], username: str) -> ProviderProfile:
    """
    Pick a provider profile for an account.

    The server host is matched first; without a server URL the username's
    mail domain is used. Unknown hosts get a generic profile flagged for
    discovery.
    """
    host = urlparse(server_url).hostname if server_url else None
    for host_pattern, user_pattern, builder in KNOWN_PROVIDERS:
        if host and host_pattern.search(host.lower()):
            return builder(server_url, username)
        if not host and user_pattern and user_pattern.search(username.lower()):
            return builder(server_url or "", username)

    if not server_url:
        raise ValidationError("server_url", f"Cannot detect a CalDAV server for {username}; a server URL is required")

    logger.info(f"Unrecognized CalDAV host {host}; discovery required")
    return generic_profile(server_url)


def generic_profile(server_url: str) -> ProviderProfile:
    parsed = urlparse(server_url)
    base = f"{parsed.scheme}://{parsed.netloc}"
    return ProviderProfile(
        name="caldav",
        server_url=base,
        sync_collection=True,
        needs_discovery=True,
    )


def fallback_endpoints(profile: ProviderProfile, username: str) -> Tuple[str, str]:
    """Conventional principal/home paths used when discovery yields nothing."""
    user = quote(username, safe="@")
    return (
        f"{profile.server_url}/principals/{user}/",
        f"{profile.server_url}/calendars/{user}/",
    )
