"""scjail_etl.embeddings

Natural-language synopsis of a Record and its embedding vector.

Enrichment is best-effort: a failed embedding is logged and counted, and the
record is persisted without one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from scjail_etl.records import EMBEDDING_DIMENSIONS, Record
from scjail_etl.shared import CrawlCounters, CrawlerError, InternalError

log = logging.getLogger(__name__)

DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"


# ---------------------------------------------------------------------------
# Story
# ---------------------------------------------------------------------------

def _person_noun(sex: str | None) -> str:
    s = (sex or "").strip().lower()
    if s in ("male", "m"):
        return "man"
    if s in ("female", "f"):
        return "woman"
    return "person"


def generate_embedding_story(record: Record) -> str:
    """Render the record as four sentence groups joined by spaces."""
    p = record.profile
    full_name = p.full_name

    race = f"{p.race} " if p.race else ""
    intro = (
        f"A {race}{_person_noun(p.sex)} named {full_name} was arrested on "
        f"{p.booking_timestamp.strftime('%B %d, %Y')} by "
        f"{p.arresting_agency or 'an unknown agency'}."
    )

    descriptions = ", ".join(c.description for c in record.charges if c.description)
    charges = (
        f"Charges include {descriptions or 'unspecified offenses'}. "
        f"Bond is set at {record.total_bond_description()}."
    )

    if p.aliases:
        alias_sentence = f"{full_name} is known to the following aliases: {', '.join(p.aliases)}."
    else:
        alias_sentence = "No known aliases."
    description = (
        f"{p.first_name} is described as {p.height or 'unknown height'} tall, "
        f"weighing {p.weight or 'unknown weight'}, and having "
        f"{p.eye_color or 'unknown eye color'} eyes. {alias_sentence}"
    )

    identifiers = (
        f"The inmate's booking number is {p.booking_number or 'unknown'}, "
        f"and their permanent ID is {p.permanent_id or 'unknown'}."
    )
    return " ".join((intro, charges, description, identifiers))


# ---------------------------------------------------------------------------
# Embedder
# ---------------------------------------------------------------------------

@dataclass
class OpenAIEmbedder:
    """Embedding client over the OpenAI embeddings endpoint.

    The API key is read from OPENAI_API_KEY by the SDK.
    """

    model: str = DEFAULT_EMBEDDING_MODEL
    client: Any = field(default=None, repr=False)

    def _client(self) -> Any:
        if self.client is None:
            from openai import OpenAI  # type: ignore[import-untyped]

            self.client = OpenAI()
        return self.client

    def embed(self, text: str) -> list[float]:
        from openai import OpenAIError  # type: ignore[import-untyped]

        if not text:
            raise InternalError("refusing to embed empty text")
        try:
            response = self._client().embeddings.create(input=text, model=self.model)
        except OpenAIError as exc:
            raise InternalError(f"embedding request failed: {exc}") from exc
        if not response.data:
            raise InternalError("embedding response contained no data")
        vector = list(response.data[0].embedding)
        if len(vector) != EMBEDDING_DIMENSIONS:
            raise InternalError(
                f"model {self.model} returned {len(vector)} dimensions, "
                f"expected {EMBEDDING_DIMENSIONS}"
            )
        return vector


def attach_embedding(
    record: Record,
    embedder: OpenAIEmbedder | None,
    counters: CrawlCounters,
) -> Record:
    """Return record with an embedding attached, or unchanged on failure."""
    if embedder is None:
        return record
    story = generate_embedding_story(record)
    log.debug("Embedding story for %s: %s", record.source_url, story)
    try:
        enriched = record.with_embedding(embedder.embed(story))
    except CrawlerError as exc:
        log.warning("Failed to gather embedding for %s: %s", record.source_url, exc)
        counters.embedding_failures += 1
        counters.warnings.append(f"embedding failed {record.source_url}: {exc}")
        return record
    counters.embeddings_gathered += 1
    return enriched
