"""scjail_etl.extract

Builds a validated Record from one roster detail page.

Page layout (as published by the sheriff's roster):
  - Profile photo:  .inmates img[src]   (protocol-relative URL)
  - Profile fields: .table-display      <dt>Label:</dt><dd>value</dd> pairs
  - Bonds:          .inmates-bond-table tbody tr
                    | Date Set | Type ID | Bond Amt | Status | Posted By | Date Posted |
  - Charges:        .inmates-charges-table tbody tr
                    | # | Description | Grade | Offense Date |

Processing order:
  1.  Submit the photo fetch (if any) so it overlaps with parsing
  2.  Collect profile fields through the label table
  3.  Validate core attributes          → ParseError
  4.  Join the photo fetch               (failures leave image_bytes None)
  5.  Bonds                              (zero bonds is logged, not fatal)
  6.  Charges                            (zero charges → ParseError)
"""

from __future__ import annotations

import logging
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable
from urllib.parse import urljoin

from bs4 import BeautifulSoup
from bs4.element import Tag

from scjail_etl.normalize import (
    normalize_label,
    parse_aliases,
    parse_booking_ts,
    parse_dob,
    parse_minor_units,
    trim,
)
from scjail_etl.records import Bond, Charge, ChargeGrade, Profile, Record
from scjail_etl.shared import ParseError

log = logging.getLogger(__name__)

PROFILE_SELECTOR = ".table-display"
IMAGE_SELECTOR = ".inmates img[src]"
BOND_ROW_SELECTOR = ".inmates-bond-table tbody tr"
CHARGE_ROW_SELECTOR = ".inmates-charges-table tbody tr"

ImageFetch = Callable[[str], "Future[bytes | None]"]


# ---------------------------------------------------------------------------
# Profile builder + label table
# ---------------------------------------------------------------------------

@dataclass
class _ProfileBuilder:
    first_name: str | None = None
    middle_name: str | None = None
    last_name: str | None = None
    suffix: str | None = None
    permanent_id: str | None = None
    sex: str | None = None
    dob_text: str | None = None
    height: str | None = None
    weight: str | None = None
    race: str | None = None
    eye_color: str | None = None
    aliases: tuple[str, ...] | None = None
    arresting_agency: str | None = None
    booking_text: str | None = None
    booking_number: str | None = None


def _setter(attr: str, transform: Callable[[str | None], object] = trim):
    def _set(builder: _ProfileBuilder, value: str | None) -> None:
        setattr(builder, attr, transform(value))
    return _set


def _height(value: str | None) -> str | None:
    # The roster escapes the inch mark: 5'10\"
    return trim(value.replace("\\", "")) if value else None


PROFILE_LABELS: dict[str, Callable[[_ProfileBuilder, str | None], None]] = {
    "first": _setter("first_name"),
    "middle": _setter("middle_name"),
    "last": _setter("last_name"),
    "affix": _setter("suffix"),
    "permanent id": _setter("permanent_id"),
    "sex": _setter("sex"),
    "date of birth": _setter("dob_text"),
    "height": _setter("height", _height),
    "weight": _setter("weight"),
    "race": _setter("race"),
    "eye color": _setter("eye_color"),
    "alias(es)": _setter("aliases", parse_aliases),
    "committing agency": _setter("arresting_agency"),
    "booking date time": _setter("booking_text"),
    "booking number": _setter("booking_number"),
}


def _cell_text(node: Tag) -> str:
    return node.get_text(" ", strip=True)


def parse_profile_fields(soup: BeautifulSoup) -> _ProfileBuilder:
    """Walk every dt/dd pair in the profile sections through PROFILE_LABELS."""
    builder = _ProfileBuilder()
    found = 0
    for section in soup.select(PROFILE_SELECTOR):
        # dt and dd come in pairs: dt is the label, dd the value.
        for dt, dd in zip(section.find_all("dt"), section.find_all("dd")):
            label = normalize_label(_cell_text(dt))
            if label is None:
                log.warning("No text found in dt %s; skipping.", dt)
                continue
            setter = PROFILE_LABELS.get(label)
            if setter is None:
                continue
            # dd is legitimately empty for e.g. a missing middle name.
            setter(builder, _cell_text(dd))
            found += 1

    if found < len(PROFILE_LABELS):
        log.warning(
            "Found %d profile labels of interest, expected %d. Continuing.",
            found, len(PROFILE_LABELS),
        )
    return builder


# ---------------------------------------------------------------------------
# Bonds / charges
# ---------------------------------------------------------------------------

def parse_bonds(soup: BeautifulSoup) -> tuple[Bond, ...]:
    bonds: list[Bond] = []
    for row in soup.select(BOND_ROW_SELECTOR):
        cells = row.find_all("td")
        if len(cells) < 2:
            log.warning("No bond type found in row %s; skipping row.", row)
            continue
        if len(cells) < 3:
            log.warning("No bond amount found in row %s; skipping row.", row)
            continue
        bonds.append(
            Bond(
                bond_type=_cell_text(cells[1]),
                amount_minor_units=parse_minor_units(_cell_text(cells[2])),
            )
        )

    if not bonds:
        log.error("No bonds found in document.")
    return tuple(bonds)


def parse_charges(soup: BeautifulSoup) -> tuple[Charge, ...]:
    charges: list[Charge] = []
    for row in soup.select(CHARGE_ROW_SELECTOR):
        cells = row.find_all("td")
        if not cells:
            continue

        if len(cells) > 1:
            description = _cell_text(cells[1])
        else:
            log.warning("No description found in row %s; accepting blank description.", row)
            description = ""

        if len(cells) > 2:
            grade = ChargeGrade.from_text(_cell_text(cells[2]))
        else:
            log.warning("No grade found in row %s; defaulting to Misdemeanor.", row)
            grade = ChargeGrade.MISDEMEANOR

        offense_date = trim(_cell_text(cells[3])) if len(cells) > 3 else None
        if offense_date is None:
            offense_date = datetime.now(timezone.utc).isoformat()
            log.warning("No offense date found in row %s; assuming now (%s).", row, offense_date)

        charges.append(Charge(description=description, grade=grade, offense_date=offense_date))

    if not charges:
        raise ParseError("no charges found in document")
    return tuple(charges)


# ---------------------------------------------------------------------------
# Record
# ---------------------------------------------------------------------------

def find_image_url(soup: BeautifulSoup, source_url: str) -> str | None:
    img = soup.select_one(IMAGE_SELECTOR)
    if img is None:
        return None
    src = trim(img.get("src"))
    return urljoin(source_url, src) if src else None


def _join_image(pending: Future | None, natural_key: str) -> bytes | None:
    if pending is None:
        return None
    try:
        return pending.result()
    except Exception as exc:  # noqa: BLE001
        log.warning("Image fetch failed for %s (%s); continuing without image.", natural_key, exc)
        return None


def parse_record(
    html: str | bytes,
    natural_key: str,
    source_url: str,
    fetch_image: ImageFetch | None = None,
) -> Record:
    """Build a Record from one detail page or raise ParseError.

    When fetch_image is given, the photo request is issued before the rest
    of the page is parsed and joined when the Profile is finalized.
    """
    soup = BeautifulSoup(html, "html.parser")

    pending: Future | None = None
    image_url = find_image_url(soup, source_url)
    if image_url and fetch_image is not None:
        log.info("Found image URL %s", image_url)
        pending = fetch_image(image_url)

    try:
        fields = parse_profile_fields(soup)
        dob = parse_dob(fields.dob_text)
        booking_ts = parse_booking_ts(fields.booking_text)
        if not (fields.first_name and fields.last_name and dob and booking_ts):
            log.error(
                "Profile %s is missing core attributes: first=%r last=%r dob=%r booking=%r",
                natural_key, fields.first_name, fields.last_name,
                fields.dob_text, fields.booking_text,
            )
            raise ParseError(f"missing core attributes for {natural_key}")

        profile = Profile(
            first_name=fields.first_name,
            last_name=fields.last_name,
            date_of_birth=dob,
            booking_timestamp=booking_ts,
            middle_name=fields.middle_name,
            suffix=fields.suffix,
            permanent_id=fields.permanent_id,
            sex=fields.sex,
            arresting_agency=fields.arresting_agency,
            booking_number=fields.booking_number,
            height=fields.height,
            weight=fields.weight,
            race=fields.race,
            eye_color=fields.eye_color,
            aliases=fields.aliases,
            image_bytes=_join_image(pending, natural_key),
            natural_key=natural_key,
        )
    finally:
        if pending is not None and not pending.done():
            pending.cancel()

    return Record(
        source_url=source_url,
        profile=profile,
        bonds=parse_bonds(soup),
        charges=parse_charges(soup),
    )
