"""scjail_etl.records

In-memory record types built by the extractor and consumed once by the
serializer or the backfill updater.
"""

from __future__ import annotations

import enum
import hashlib
import logging
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Sequence

from scjail_etl.normalize import format_minor_units
from scjail_etl.shared import ArgumentError, ParseError

log = logging.getLogger(__name__)

EMBEDDING_DIMENSIONS = 1536
IMAGE_KEY_PREFIX = "mugshots"


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Profile:
    first_name: str
    last_name: str
    date_of_birth: date
    booking_timestamp: datetime
    middle_name: str | None = None
    suffix: str | None = None
    permanent_id: str | None = None
    sex: str | None = None
    arresting_agency: str | None = None
    booking_number: str | None = None
    height: str | None = None
    weight: str | None = None
    race: str | None = None
    eye_color: str | None = None
    aliases: tuple[str, ...] | None = None
    image_bytes: bytes | None = None
    embedding: tuple[float, ...] | None = None
    natural_key: str | None = None

    def __post_init__(self) -> None:
        if not (
            self.first_name
            and self.last_name
            and self.date_of_birth
            and self.booking_timestamp
        ):
            raise ParseError(
                "profile requires first name, last name, dob and booking date; "
                f"got {self.core_attributes}"
            )

    @property
    def full_name(self) -> str:
        name = self.first_name
        if self.middle_name:
            name += f" {self.middle_name}"
        name += f" {self.last_name}"
        if self.suffix:
            name += f", {self.suffix}"
        return name

    @property
    def core_attributes(self) -> str:
        return (
            f"{self.first_name} {self.last_name} dob=[{self.date_of_birth}] "
            f"booking date=[{self.booking_timestamp}]"
        )

    @property
    def has_image(self) -> bool:
        return bool(self.image_bytes)

    def image_key(self) -> str:
        """Deterministic object-storage key derived from the core attributes."""
        digest = hashlib.sha256(
            (
                f"{self.first_name}{self.last_name}"
                f"{self.date_of_birth.isoformat()}"
                f"{self.booking_timestamp.isoformat()}"
            ).encode()
        ).hexdigest()
        return f"{IMAGE_KEY_PREFIX}/{digest}"


# ---------------------------------------------------------------------------
# Bond / Charge
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Bond:
    bond_type: str
    amount_minor_units: int


class ChargeGrade(enum.Enum):
    FELONY = "Felony"
    MISDEMEANOR = "Misdemeanor"

    @classmethod
    def from_text(cls, value: str | None) -> ChargeGrade:
        text = (value or "").strip().lower()
        for grade in cls:
            if grade.value.lower() == text:
                return grade
        log.warning("Unknown charge grade %r; defaulting to Misdemeanor.", value)
        return cls.MISDEMEANOR

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Charge:
    description: str
    grade: ChargeGrade
    offense_date: str


# ---------------------------------------------------------------------------
# Record
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Record:
    source_url: str
    profile: Profile
    bonds: tuple[Bond, ...]
    charges: tuple[Charge, ...]

    def total_bond_description(self) -> str:
        """'unbondable' if any bond says so, else the formatted sum."""
        if any(b.bond_type.strip().lower() == "unbondable" for b in self.bonds):
            return "unbondable"
        return format_minor_units(sum(b.amount_minor_units for b in self.bonds))

    def with_embedding(self, vector: Sequence[float]) -> Record:
        if len(vector) != EMBEDDING_DIMENSIONS:
            raise ArgumentError(
                f"embedding must have {EMBEDDING_DIMENSIONS} dimensions, got {len(vector)}"
            )
        profile = replace(self.profile, embedding=tuple(float(x) for x in vector))
        return replace(self, profile=profile)
