"""
CalDAV provider adapter.

Speaks WebDAV/CalDAV over httpx:
- PROPFIND for authentication checks, principal/home discovery and
  calendar listing
- REPORT sync-collection for incremental sync, calendar-query for full sync
- PUT/DELETE guarded by If-None-Match / If-Match for optimistic concurrency

Transient failures (timeouts, transport errors, 5xx, 429, 408) are retried
with exponential backoff via tenacity; other 4xx responses are terminal.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Tuple
from urllib.parse import quote, urljoin, urlparse

import httpx

from calsync import config
from calsync.exceptions import (
    ConcurrencyError,
    ProviderAuthError,
    ProviderNotFoundError,
    RetryableProviderError,
    SyncTokenInvalid,
    TerminalProviderError,
    ValidationError,
)
from calsync.models.calendar import AccessRole, Calendar, CanonicalEvent, EventListing, ProviderSession, WriteResult
from calsync.providers import caldav_xml
from calsync.providers.base import CalendarProvider
from calsync.providers.profiles import ProviderProfile, detect_provider, fallback_endpoints
from calsync.providers.session_cache import ProviderSessionCache
from calsync.resilience import with_provider_retry
from calsync.services.event_normalizer import EventNormalizer

logger = logging.getLogger(__name__)

# Network failures that are worth another attempt
NETWORK_EXCEPTIONS = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.RemoteProtocolError,
)

RETRYABLE_STATUS = {408, 429}


class CalDAVProvider(CalendarProvider):
    """CalendarProvider over the CalDAV protocol."""

    def __init__(
        self,
        username: str,
        password: str,
        server_url: Optional[str] = None,
        profile: Optional[ProviderProfile] = None,
        session_cache: Optional[ProviderSessionCache] = None,
        normalizer: Optional[EventNormalizer] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        session_ttl_seconds: int = config.PROVIDER_SESSION_TTL_SECONDS,
    ):
        self.username = username
        self.profile = profile or detect_provider(server_url, username)
        self.name = self.profile.name
        self.sessions = session_cache if session_cache is not None else ProviderSessionCache()
        self.normalizer = normalizer or EventNormalizer()
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.session_ttl_seconds = session_ttl_seconds

        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            auth=httpx.BasicAuth(username, password),
            timeout=config.CALDAV_TIMEOUT,
            follow_redirects=True,
            transport=transport,
            headers={"User-Agent": "calsync/0.1"},
        )

    @property
    def session_key(self) -> str:
        return ProviderSessionCache.key_for(self.profile.name, self.username)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    @with_provider_retry
    async def _request(
        self,
        method: str,
        url: str,
        body: Optional[str] = None,
        headers: Optional[dict] = None,
        depth: Optional[int] = None,
        ok: Iterable[int] = (200, 207),
        sync_calendar_id: Optional[str] = None,
    ) -> httpx.Response:
        request_headers = dict(headers or {})
        if body is not None:
            request_headers.setdefault("Content-Type", "application/xml; charset=utf-8")
        if depth is not None:
            request_headers["Depth"] = str(depth)

        try:
            response = await self._client.request(
                method,
                url,
                content=body.encode("utf-8") if body is not None else None,
                headers=request_headers,
            )
        except NETWORK_EXCEPTIONS as e:
            logger.warning(f"{self.name} {method} {url} failed: {type(e).__name__}: {e}")
            raise RetryableProviderError(
                f"Network error talking to {self.name}: {type(e).__name__}",
                provider=self.name,
                url=url,
            ) from e

        if response.status_code in ok:
            return response
        self._raise_for_status(response, method, url, sync_calendar_id)

    def _raise_for_status(
        self,
        response: httpx.Response,
        method: str,
        url: str,
        sync_calendar_id: Optional[str],
    ) -> None:
        code = response.status_code
        context = f"{self.name} {method} {url} returned {code}"

        if sync_calendar_id and (
            code == 410 or (code in (403, 409) and caldav_xml.is_invalid_sync_token(response.text))
        ):
            raise SyncTokenInvalid(sync_calendar_id)
        if code == 412:
            raise ConcurrencyError(
                f"Precondition failed: {context}",
                current_etag=response.headers.get("ETag"),
                detail={"url": url},
            )
        if code >= 500 or code in RETRYABLE_STATUS:
            raise RetryableProviderError(context, provider=self.name, status_code=code, url=url)
        if code in (401, 403):
            self.sessions.invalidate(self.session_key)
            raise ProviderAuthError(context, provider=self.name, status_code=code, url=url)
        if code == 404:
            raise ProviderNotFoundError(context, provider=self.name, status_code=code, url=url)
        raise TerminalProviderError(context, provider=self.name, status_code=code, url=url)

    def _absolute(self, href: str, base: Optional[str] = None) -> str:
        return urljoin(base or self.profile.server_url + "/", href)

    def _event_url(self, calendar: Calendar, uid: str) -> str:
        return f"{calendar.url.rstrip('/')}/{quote(uid, safe='@')}.ics"

    # ------------------------------------------------------------------
    # Authentication & discovery
    # ------------------------------------------------------------------

    async def authenticate(self) -> ProviderSession:
        session = await self.sessions.get_or_refresh(self.session_key, self._login)
        if session.profile is not None:
            self.profile = session.profile
        return session

    async def _login(self) -> ProviderSession:
        if self.profile.needs_discovery or not self.profile.principal_url:
            self.profile = await self.discover_profile()

        await self._request(
            "PROPFIND",
            self.profile.principal_url,
            body=caldav_xml.PROPFIND_DISPLAYNAME,
            depth=0,
        )
        logger.info(f"Authenticated {self.username} against {self.profile.name}")
        return ProviderSession.for_ttl(
            self.session_key,
            {"username": self.username, "principal_url": self.profile.principal_url},
            self.session_ttl_seconds,
            profile=self.profile,
        )

    async def _find_href(self, url: str, body: str, prop: str) -> Optional[str]:
        try:
            response = await self._request("PROPFIND", url, body=body, depth=0)
        except (ProviderNotFoundError, TerminalProviderError) as e:
            logger.info(f"Discovery step {prop} at {url} failed: {e.message}")
            return None
        for item in caldav_xml.parse_multistatus(response.text).responses:
            href = item.child_href(prop)
            if href:
                return href
        return None

    async def discover_profile(self) -> ProviderProfile:
        """
        Discovery handshake: well-known resource -> principal URL ->
        calendar-home URL, falling back to conventional paths.
        """
        server = self.profile.server_url.rstrip("/")
        principal = await self._find_href(
            f"{server}/.well-known/caldav", caldav_xml.PROPFIND_PRINCIPAL, "current-user-principal"
        )
        if not principal:
            principal = await self._find_href(f"{server}/", caldav_xml.PROPFIND_PRINCIPAL, "current-user-principal")

        fallback_principal, fallback_home = fallback_endpoints(self.profile, self.username)
        principal_url = self._absolute(principal) if principal else fallback_principal

        home = await self._find_href(principal_url, caldav_xml.PROPFIND_HOME_SET, "calendar-home-set")
        home_url = self._absolute(home) if home else fallback_home
        if not home_url.endswith("/"):
            home_url += "/"

        logger.info(f"Discovered {self.profile.name} principal={principal_url} home={home_url}")
        return self.profile.with_endpoints(principal_url, home_url)

    async def discover_calendars(self) -> List[Calendar]:
        await self.authenticate()
        home = self.profile.calendar_home_url
        response = await self._request("PROPFIND", home, body=caldav_xml.PROPFIND_CALENDARS, depth=1)

        calendars: List[Calendar] = []
        for item in caldav_xml.parse_multistatus(response.text).responses:
            if not item.is_calendar:
                continue
            components = item.components or ["VEVENT"]
            if "VEVENT" not in components:
                continue
            url = self._absolute(item.href, home)
            supports_sync = self.profile.sync_collection and (
                "sync-collection" in item.supported_reports or item.text("sync-token") is not None
            )
            calendars.append(Calendar(
                id=url.rstrip("/").rsplit("/", 1)[-1],
                url=url if url.endswith("/") else url + "/",
                display_name=item.text("displayname") or "",
                description=item.text("calendar-description"),
                access_role=AccessRole(caldav_xml.access_role_from_privileges(item.privileges)),
                supports_sync_collection=supports_sync,
                supported_components=components,
                provider=self.profile.name,
            ))
        logger.info(f"Found {len(calendars)} calendars for {self.username} on {self.profile.name}")
        return calendars

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def list_events(
        self,
        calendar: Calendar,
        sync_token: Optional[str] = None,
        time_range: Optional[Tuple[datetime, datetime]] = None,
    ) -> EventListing:
        await self.authenticate()
        if sync_token and calendar.supports_sync_collection:
            return await self._list_incremental(calendar, sync_token)
        return await self._list_full(calendar, time_range)

    def _decode(self, data: str, etag: Optional[str], calendar: Calendar, href: str) -> List[CanonicalEvent]:
        try:
            return self.normalizer.from_ical(
                data,
                etag=etag,
                calendar_id=calendar.id,
                provider=self.profile.name,
                href=href,
            )
        except ValidationError as e:
            logger.warning(f"Skipping unparseable resource {href} in {calendar.id}: {e.message}")
            return []

    async def _list_incremental(self, calendar: Calendar, sync_token: str) -> EventListing:
        response = await self._request(
            "REPORT",
            calendar.url,
            body=caldav_xml.sync_collection(sync_token),
            depth=0,
            sync_calendar_id=calendar.id,
        )
        multistatus = caldav_xml.parse_multistatus(response.text)
        collection_path = urlparse(calendar.url).path.rstrip("/")

        listing = EventListing(sync_token=multistatus.sync_token or sync_token, is_full_snapshot=False)
        for item in multistatus.responses:
            href = self._absolute(item.href, calendar.url)
            if urlparse(href).path.rstrip("/") == collection_path:
                continue
            if item.is_gone:
                listing.deleted.append(href)
                continue
            data = item.text("calendar-data")
            if data is None:
                fetched = await self.get_event(calendar, uid="", href=href)
                if fetched is not None:
                    listing.events.append(fetched)
                continue
            listing.events.extend(self._decode(data, item.text("getetag"), calendar, href))

        logger.info(
            f"Incremental sync of {calendar.id}: {len(listing.events)} changed, {len(listing.deleted)} deleted"
        )
        return listing

    async def _current_sync_token(self, calendar: Calendar) -> Optional[str]:
        try:
            response = await self._request("PROPFIND", calendar.url, body=caldav_xml.PROPFIND_SYNC_TOKEN, depth=0)
        except TerminalProviderError as e:
            logger.info(f"Could not read sync-token for {calendar.id}: {e.message}")
            return None
        for item in caldav_xml.parse_multistatus(response.text).responses:
            token = item.text("sync-token")
            if token:
                return token
        return None

    async def _list_full(
        self,
        calendar: Calendar,
        time_range: Optional[Tuple[datetime, datetime]],
    ) -> EventListing:
        if time_range is None:
            now = datetime.now(timezone.utc)
            time_range = (
                now - timedelta(days=config.SYNC_WINDOW_PAST_DAYS),
                now + timedelta(days=config.SYNC_WINDOW_FUTURE_DAYS),
            )

        # Read the token before the query so changes made in between are
        # delivered again by the next incremental pass.
        token = await self._current_sync_token(calendar) if calendar.supports_sync_collection else None

        response = await self._request(
            "REPORT",
            calendar.url,
            body=caldav_xml.calendar_query(*time_range),
            depth=1,
        )
        listing = EventListing(sync_token=token, is_full_snapshot=True)
        for item in caldav_xml.parse_multistatus(response.text).responses:
            data = item.text("calendar-data")
            if data is None:
                continue
            href = self._absolute(item.href, calendar.url)
            listing.events.extend(self._decode(data, item.text("getetag"), calendar, href))

        logger.info(f"Full sync of {calendar.id}: {len(listing.events)} events")
        return listing

    # ------------------------------------------------------------------
    # Entity operations
    # ------------------------------------------------------------------

    async def get_event(self, calendar: Calendar, uid: str, href: Optional[str] = None) -> Optional[CanonicalEvent]:
        url = self._absolute(href, calendar.url) if href else self._event_url(calendar, uid)
        try:
            response = await self._request("GET", url, ok=(200,))
        except ProviderNotFoundError:
            return None
        events = self._decode(response.text, response.headers.get("ETag"), calendar, url)
        return events[0] if events else None

    async def create_event(self, calendar: Calendar, event: CanonicalEvent) -> WriteResult:
        url = self._event_url(calendar, event.uid)
        try:
            response = await self._request(
                "PUT",
                url,
                body=self.normalizer.to_ical(event),
                headers={"Content-Type": "text/calendar; charset=utf-8", "If-None-Match": "*"},
                ok=(200, 201, 204),
            )
        except ConcurrencyError as e:
            raise ConcurrencyError(f"Event {event.uid} already exists in {calendar.id}", detail={"url": url}) from e
        logger.info(f"Created event {event.uid} in {calendar.id}")
        return WriteResult(uid=event.uid, href=url, etag=response.headers.get("ETag"))

    async def update_event(self, calendar: Calendar, event: CanonicalEvent, etag: str) -> WriteResult:
        url = self._absolute(event.href, calendar.url) if event.href else self._event_url(calendar, event.uid)
        try:
            response = await self._request(
                "PUT",
                url,
                body=self.normalizer.to_ical(event),
                headers={"Content-Type": "text/calendar; charset=utf-8", "If-Match": etag},
                ok=(200, 201, 204),
            )
        except ConcurrencyError as e:
            raise ConcurrencyError(
                f"Stale etag for event {event.uid}",
                current_etag=e.current_etag,
                detail={"url": url, "sent_etag": etag},
            ) from e
        logger.info(f"Updated event {event.uid} in {calendar.id}")
        return WriteResult(uid=event.uid, href=url, etag=response.headers.get("ETag"))

    async def delete_event(self, calendar: Calendar, uid: str, etag: Optional[str], href: Optional[str] = None) -> None:
        url = self._absolute(href, calendar.url) if href else self._event_url(calendar, uid)
        headers = {"If-Match": etag} if etag else {}
        try:
            await self._request("DELETE", url, headers=headers, ok=(200, 204))
        except ProviderNotFoundError:
            logger.info(f"Event {uid} already absent from {calendar.id}")
            return
        except ConcurrencyError as e:
            raise ConcurrencyError(
                f"Stale etag deleting event {uid}",
                current_etag=e.current_etag,
                detail={"url": url, "sent_etag": etag},
            ) from e
        logger.info(f"Deleted event {uid} from {calendar.id}")
