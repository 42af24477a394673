"""
State parser - state overview pages (/states/<id>) into state records.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup, Tag

from crawler.diff import WatchField
from crawler.interfaces import Parser


logger = logging.getLogger(__name__)


def render_official(value: Any) -> str:
    if not value:
        return "—"
    if value.get("vacant"):
        return "Vacant"
    party = value.get("party")
    return f"{value.get('name')} ({party})" if party else str(value.get("name"))


def render_officials(values: Any) -> str:
    return ", ".join(render_official(v) for v in values or []) or "—"


def render_seats(value: Any) -> str:
    if not value:
        return "—"
    return f"D {value.get('democratic', 0)} / R {value.get('republican', 0)}"


def _first_number(text: str) -> Optional[int]:
    match = re.search(r"(\d+)", text)
    return int(match.group(1)) if match else None


def _closest(tag: Tag, classes: List[str]) -> Optional[Tag]:
    for parent in tag.parents:
        if set(parent.get("class") or ()) & set(classes):
            return parent
    return None


def extract_official(section: Optional[Tag]) -> Dict[str, Any]:
    vacant = {"name": "Vacant", "user_id": None, "party": None, "vacant": True}
    if section is None:
        return vacant
    link = section.select_one('a[href*="/users/"]')
    if link is None:
        return vacant
    match = re.search(r"/users/(\d+)", link.get("href") or "")
    h6 = link.find("h6")
    name = " ".join((h6 or link).get_text().split())
    if not match or name.lower() == "vacant":
        return vacant
    party = section.select_one("h6.ppusa-ava-color, h6.ppusa-bmc-color")
    return {
        "name": name or None,
        "user_id": int(match.group(1)),
        "party": " ".join(party.get_text().split()) if party else None,
        "vacant": False,
    }


class StateParser(Parser):
    """Parser for state overview pages."""

    name = "StateParser"

    watch_fields = (
        WatchField("electoral_votes", "EV"),
        WatchField("governor", "Governor", render_official),
        WatchField("senators", "Senators", render_officials),
        WatchField("legislature_seats", "Legislature", render_seats),
    )

    def parse(self, html: str) -> Optional[Dict[str, Any]]:
        soup = BeautifulSoup(html, "html.parser")
        title = soup.title.get_text() if soup.title else ""
        name = " ".join(title.split("|")[0].split())
        if not name:
            dropdown = soup.select_one("#stateDropdown")
            name = " ".join(dropdown.get_text().split()) if dropdown else ""
        if not name:
            return None

        record: Dict[str, Any] = {
            "name": name,
            "electoral_votes": None,
            "house_seats": None,
            "governor": None,
            "senators": [],
            "representatives": [],
            "legislature_seats": {"democratic": 0, "republican": 0},
        }

        for tr in soup.select("table tbody tr"):
            th = tr.find("th")
            td = tr.find("td")
            if th is None or td is None:
                continue
            header = th.get_text().strip().lower()
            if "electoral" in header and "vote" in header:
                record["electoral_votes"] = _first_number(td.get_text())
            elif "house" in header and "seat" in header:
                record["house_seats"] = _first_number(td.get_text())

        for heading in soup.find_all("h4"):
            label = heading.get_text().strip().lower()
            if label == "governor" and record["governor"] is None:
                record["governor"] = extract_official(_closest(heading, ["row"]))
            elif label == "senator":
                record["senators"].append(extract_official(_closest(heading, ["col-sm-6", "row"])))
            elif label == "representative":
                section = _closest(heading, ["col-sm-6", "row"])
                official = extract_official(section)
                seats = section.select_one(".font-weight-light") if section is not None else None
                seat_match = re.search(r"(\d+)\s*seat", seats.get_text(), re.IGNORECASE) if seats else None
                if seat_match:
                    official["seats"] = int(seat_match.group(1))
                record["representatives"].append(official)

        for table in soup.find_all("table"):
            headers = [th.get_text().strip().lower() for th in table.select("thead th")]
            if "party" not in headers or "seats" not in headers:
                continue
            for tr in table.select("tbody tr"):
                cells = tr.find_all("td")
                if len(cells) < 2:
                    continue
                party = cells[0].get_text().strip().lower()
                count = _first_number(cells[1].get_text())
                if count is None:
                    continue
                if "democrat" in party:
                    record["legislature_seats"]["democratic"] = count
                if "republican" in party:
                    record["legislature_seats"]["republican"] = count

        # a titled page with neither figure is an error or placeholder page
        if record["electoral_votes"] is None and record["governor"] is None:
            logger.debug(f"No state data on page titled '{name}'")
            return None
        return record
