"""
Profile parser - player profile pages (/users/<id>) into profile records.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup

from crawler.diff import WatchField
from crawler.interfaces import Parser


logger = logging.getLogger(__name__)

POSITION_RE = re.compile(
    r"Private Citizen|Senator|Representative|Governor|President|Vice President|Mayor|"
    r"Attorney General|Speaker|Leader|Chief|Secretary|Judge|Chair|Councill?or",
    re.IGNORECASE,
)
NAV_SELECTORS = "#navbar_global, #navbar-main, nav, header, footer, .ppusa-navbar, .dropdown-menu"
LAST_ONLINE_RE = re.compile(r"^(Last\s*(Online|Active|Seen)|Status)$", re.IGNORECASE)
RELATIVE_RE = re.compile(r"(\d+)\s*(minute|hour|day|week|month|year)s?\s*ago")

_UNIT_DAYS = {
    "minute": 1 / 1440,
    "hour": 1 / 24,
    "day": 1,
    "week": 7,
    "month": 30,
    "year": 365,
}

REGIONS = {
    "rust_belt": {
        "minnesota", "wisconsin", "michigan", "illinois", "indiana", "ohio", "iowa", "missouri",
    },
    "northeast": {
        "connecticut", "maine", "massachusetts", "new hampshire", "new jersey", "pennsylvania",
        "rhode island", "vermont", "new york", "delaware", "maryland", "district of columbia",
    },
    "south": {
        "alabama", "arkansas", "florida", "georgia", "kentucky", "louisiana", "mississippi",
        "north carolina", "oklahoma", "south carolina", "tennessee", "texas", "virginia",
        "west virginia",
    },
    "west": {
        "alaska", "hawaii", "washington", "oregon", "california", "nevada", "idaho", "montana",
        "wyoming", "utah", "colorado", "arizona", "new mexico",
    },
}


def _clean(text: Optional[str]) -> str:
    return " ".join((text or "").split())


def state_to_region(state: Optional[str]) -> Optional[str]:
    if not state:
        return None
    clean = re.sub(r"^state of\s+", "", state.strip(), flags=re.IGNORECASE).lower()
    for region, states in REGIONS.items():
        if clean in states:
            return region
    return None


def roles_needed(party: Optional[str], position: Optional[str]) -> List[str]:
    """Office roles a Democratic office holder should carry."""
    if not party or not position or not re.search(r"Democratic", party, re.IGNORECASE):
        return []
    if re.search(r"Private\s*Citizen", position, re.IGNORECASE):
        return []
    roles = []
    for pattern, role in (
        (r"Representative", "rep"),
        (r"Senator", "sen"),
        (r"Governor", "gov"),
        (r"White House Chief of Staff|Acting\s+Secretary|Secretary\b", "cabinet"),
    ):
        if re.search(pattern, position, re.IGNORECASE):
            roles.append(role)
    return roles


def parse_relative_time(text: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """'3 days ago' / 'just now' / an absolute date into a UTC datetime."""
    now = now or datetime.now(tz=timezone.utc)
    lowered = text.lower().strip()
    if re.search(r"just now|moments? ago", lowered):
        return now
    match = RELATIVE_RE.search(lowered)
    if match:
        return now - timedelta(days=int(match.group(1)) * _UNIT_DAYS[match.group(2)])
    try:
        parsed = datetime.fromisoformat(text.strip())
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class ProfileParser(Parser):
    """Parser for player profile pages."""

    name = "ProfileParser"

    watch_fields = (
        WatchField("position", "Position"),
        WatchField("party", "Party"),
        WatchField("state", "State"),
    )

    def __init__(self, base_url: str = "https://powerplayusa.net"):
        self.base_url = base_url.rstrip("/")

    def parse(self, html: str) -> Optional[Dict[str, Any]]:
        soup = BeautifulSoup(html, "html.parser")
        title = soup.title.get_text() if soup.title else ""
        name = _clean(title.split("|")[0])
        if not name:
            return None

        rows = self._table_rows(soup)
        party = self._party(soup)
        state = self._state(html)
        position = next(
            (t for t in (_clean(h.get_text()) for h in soup.find_all("h5")) if POSITION_RE.search(t)),
            None,
        )

        es = None
        es_text = rows.get("election stamina")
        if es_text:
            match = re.search(r"([0-9]+(?:\.[0-9]+)?)", es_text)
            es = match.group(1) if match else None

        last_online_text = next((v for k, v in rows.items() if LAST_ONLINE_RE.match(k)), None)
        last_online_at = parse_relative_time(last_online_text) if last_online_text else None
        last_online_days = None
        if last_online_at is not None:
            last_online_days = max(0, (datetime.now(tz=timezone.utc) - last_online_at).days)

        discord = rows.get("discord")
        return {
            "name": name,
            "discord": discord.split(" ")[-1] if discord else None,
            "party": party,
            "state": state,
            "position": position,
            "account_age": rows.get("account age") or None,
            "es": es,
            "co": rows.get("campaign organization") or None,
            "nr": rows.get("name recognition") or None,
            "cash": self._cash(soup),
            "avatar": self._avatar(soup),
            "last_online_text": last_online_text,
            "last_online_at": last_online_at.isoformat() if last_online_at else None,
            "last_online_days": last_online_days,
            "region": state_to_region(state),
            "roles_needed": roles_needed(party, position),
        }

    @staticmethod
    def _table_rows(soup: BeautifulSoup) -> Dict[str, str]:
        rows: Dict[str, str] = {}
        for tr in soup.select("table tr"):
            th = tr.find("th")
            td = tr.find("td")
            if th is None or td is None:
                continue
            rows[_clean(th.get_text()).lower()] = _clean(td.get_text())
        return rows

    @staticmethod
    def _party(soup: BeautifulSoup) -> Optional[str]:
        for tr in soup.select("table tr"):
            th = tr.find("th")
            if th is None or not re.match(r"^Party$", _clean(th.get_text()), re.IGNORECASE):
                continue
            link = tr.select_one("td a")
            text = _clean(link.get_text()) if link else ""
            if not text and tr.find("td"):
                text = _clean(tr.find("td").get_text())
            return text or None
        return None

    @staticmethod
    def _state(html: str) -> Optional[str]:
        # a fresh tree, so stripping navigation does not affect other lookups
        content = BeautifulSoup(html, "html.parser")
        for node in content.select(NAV_SELECTORS):
            node.decompose()
        link = content.select_one('a[href*="/states/"]')
        text = _clean(link.get_text()) if link else ""
        if text and re.search(r"[A-Za-z]", text):
            return text
        for heading in content.find_all(["h5", "h4", "h3"]):
            heading_text = _clean(heading.get_text())
            if re.search(r"\bState of\b", heading_text, re.IGNORECASE):
                return re.sub(r"^State of\s+", "", heading_text, flags=re.IGNORECASE) or None
        return None

    @staticmethod
    def _cash(soup: BeautifulSoup) -> Optional[str]:
        for heading in soup.find_all("h5"):
            if "Balance" in heading.get_text() and heading.parent is not None:
                money = heading.parent.select_one(".ppusa-money-color")
                if money and _clean(money.get_text()):
                    return _clean(money.get_text())
        for money in soup.select(".ppusa-money-color"):
            text = _clean(money.get_text())
            if re.match(r"^\$\s*\d", text):
                return text
        return None

    def _avatar(self, soup: BeautifulSoup) -> Optional[str]:
        img = soup.select_one('img.img-profile, img[src*="profile_pictures"], img[alt*="profile" i], img[alt*="avatar" i]')
        src = (img.get("src") or "").strip() if img else ""
        if not src:
            meta = soup.select_one('meta[property="og:image"], meta[name="og:image"]')
            src = (meta.get("content") or "").strip() if meta else ""
        if not src or src.startswith("#"):
            return None
        if src.startswith("//"):
            return f"https:{src}"
        if src.startswith("/"):
            return f"{self.base_url}{src}"
        if not re.match(r"^https?://", src, re.IGNORECASE):
            return f"{self.base_url}/{re.sub(r'^[.]/?', '', src)}"
        return src
