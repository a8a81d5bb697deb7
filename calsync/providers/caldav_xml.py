"""
CalDAV request bodies and multistatus parsing (RFC 4791, RFC 6578).
"""

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional
from xml.sax.saxutils import escape

from calsync.exceptions import ProviderError

logger = logging.getLogger(__name__)

DAV = "DAV:"
CALDAV = "urn:ietf:params:xml:ns:caldav"
CALSERVER = "http://calendarserver.org/ns/"

NS = {"d": DAV, "c": CALDAV, "cs": CALSERVER}


def _tag(ns: str, name: str) -> str:
    return f"{{{ns}}}{name}"


PROPFIND_DISPLAYNAME = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop><d:displayname/><d:current-user-principal/></d:prop>
</d:propfind>"""

PROPFIND_PRINCIPAL = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop><d:current-user-principal/></d:prop>
</d:propfind>"""

PROPFIND_HOME_SET = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop><c:calendar-home-set/></d:prop>
</d:propfind>"""

PROPFIND_CALENDARS = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav" xmlns:cs="http://calendarserver.org/ns/">
  <d:prop>
    <d:displayname/>
    <d:resourcetype/>
    <d:current-user-privilege-set/>
    <d:supported-report-set/>
    <d:sync-token/>
    <c:calendar-description/>
    <c:supported-calendar-component-set/>
    <cs:getctag/>
  </d:prop>
</d:propfind>"""

PROPFIND_SYNC_TOKEN = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop><d:sync-token/></d:prop>
</d:propfind>"""


def calendar_query(start: datetime, end: datetime) -> str:
    """calendar-query REPORT for VEVENTs overlapping [start, end)."""
    fmt = "%Y%m%dT%H%M%SZ"
    return f"""<?xml version="1.0" encoding="utf-8"?>
<c:calendar-query xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop><d:getetag/><c:calendar-data/></d:prop>
  <c:filter>
    <c:comp-filter name="VCALENDAR">
      <c:comp-filter name="VEVENT">
        <c:time-range start="{start.astimezone(timezone.utc).strftime(fmt)}" end="{end.astimezone(timezone.utc).strftime(fmt)}"/>
      </c:comp-filter>
    </c:comp-filter>
  </c:filter>
</c:calendar-query>"""


def sync_collection(sync_token: Optional[str]) -> str:
    """sync-collection REPORT; an empty token asks for the initial state."""
    token = escape(sync_token or "")
    return f"""<?xml version="1.0" encoding="utf-8"?>
<d:sync-collection xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:sync-token>{token}</d:sync-token>
  <d:sync-level>1</d:sync-level>
  <d:prop><d:getetag/><c:calendar-data/></d:prop>
</d:sync-collection>"""


@dataclass
class DavResponse:
    """One <d:response> from a multistatus body."""
    href: str
    status: Optional[int] = None
    props: Dict[str, ET.Element] = field(default_factory=dict)

    @property
    def is_gone(self) -> bool:
        return self.status == 404

    def text(self, name: str) -> Optional[str]:
        element = self.props.get(name)
        if element is None or element.text is None:
            return None
        return element.text.strip()

    def child_href(self, name: str) -> Optional[str]:
        element = self.props.get(name)
        if element is None:
            return None
        href = element.find("d:href", NS)
        return href.text.strip() if href is not None and href.text else None

    @property
    def is_calendar(self) -> bool:
        resourcetype = self.props.get("resourcetype")
        if resourcetype is None:
            return False
        return (
            resourcetype.find("d:collection", NS) is not None
            and resourcetype.find("c:calendar", NS) is not None
        )

    @property
    def components(self) -> List[str]:
        element = self.props.get("supported-calendar-component-set")
        if element is None:
            return []
        return [comp.get("name", "").upper() for comp in element.findall("c:comp", NS)]

    @property
    def privileges(self) -> List[str]:
        element = self.props.get("current-user-privilege-set")
        if element is None:
            return []
        names = []
        for privilege in element.findall("d:privilege", NS):
            for child in privilege:
                names.append(child.tag.split("}", 1)[-1])
        return names

    @property
    def supported_reports(self) -> List[str]:
        element = self.props.get("supported-report-set")
        if element is None:
            return []
        names = []
        for report in element.iter(_tag(DAV, "report")):
            for child in report:
                names.append(child.tag.split("}", 1)[-1])
        return names


@dataclass
class Multistatus:
    responses: List[DavResponse] = field(default_factory=list)
    sync_token: Optional[str] = None


def _status_code(status_text: Optional[str]) -> Optional[int]:
    # "HTTP/1.1 200 OK"
    if not status_text:
        return None
    parts = status_text.split()
    if len(parts) >= 2 and parts[1].isdigit():
        return int(parts[1])
    return None


def parse_multistatus(body: str) -> Multistatus:
    """
    Parse a 207 Multi-Status body.

    Properties from propstat blocks with a non-2xx status are dropped.

    Raises:
        ProviderError: If the body is not well-formed XML
    """
    try:
        root = ET.fromstring(body.encode("utf-8") if isinstance(body, str) else body)
    except ET.ParseError as e:
        raise ProviderError(f"Malformed multistatus response: {e}") from e

    result = Multistatus()
    token = root.find("d:sync-token", NS)
    if token is not None and token.text:
        result.sync_token = token.text.strip()

    for node in root.findall("d:response", NS):
        href_node = node.find("d:href", NS)
        if href_node is None or not href_node.text:
            continue
        response = DavResponse(href=href_node.text.strip(), status=_status_code(node.findtext("d:status", None, NS)))
        for propstat in node.findall("d:propstat", NS):
            code = _status_code(propstat.findtext("d:status", None, NS))
            if code is not None and not 200 <= code < 300:
                continue
            prop = propstat.find("d:prop", NS)
            if prop is None:
                continue
            for child in prop:
                response.props[child.tag.split("}", 1)[-1]] = child
        result.responses.append(response)
    return result


def is_invalid_sync_token(body: str) -> bool:
    """True when an error body carries the DAV:valid-sync-token precondition."""
    return "valid-sync-token" in (body or "")


def access_role_from_privileges(privileges: List[str]) -> str:
    if not privileges:
        return "owner"
    if "all" in privileges or "write-acl" in privileges:
        return "owner"
    if "write" in privileges or "write-content" in privileges or "bind" in privileges:
        return "writer"
    return "reader"
