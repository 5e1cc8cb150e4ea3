"""Extract wines, tastings and winery info from page text via the LLM."""

import asyncio
import sys
from pathlib import Path

import httpx

from harvester.config import settings
from harvester.llm import LLMClient
from harvester.models import (
    OFFERING_TYPES,
    ExperienceList,
    ExtractedExperience,
    ExtractedOffering,
    OfferingList,
    ProfileInfo,
    empty_profile,
)


# ---------------------------------------------------------------------------
# System prompts
# ---------------------------------------------------------------------------


def offerings_prompt(venue_name: str) -> str:
    return f"""You are extracting wine data from {venue_name}'s website.

Extract all current release wines. For each wine return:
- name: the full wine name (e.g., "Estate Cabernet Sauvignon 2021")
- offering_type: must be one of: {", ".join(OFFERING_TYPES)}. Pick the closest match. If it's a blend of red varieties, use "Red Blend". If it's a blend of white varieties, use "White Blend".
- vintage: the vintage year as an integer, or null if NV (non-vintage) or not specified
- price: the retail price in USD as a number, or null if not listed
- description: a brief description or tasting notes, or null if none provided

Rules:
- Only include wines currently for sale (not sold out, library, or archived)
- Do not include merchandise, gift cards, or non-wine products
- If the page shows a wine club or allocation-only wine, still include it but note it in the description
- If no wines are found on the page, return an empty array"""


def experiences_prompt(venue_name: str) -> str:
    return f"""You are extracting tasting and visit experience data from {venue_name}'s website.

Extract all tasting/visit experiences currently available. For each return:
- name: the experience name (e.g., "Estate Tasting", "Cave Tour & Tasting")
- description: what the experience includes and what to expect
- price: price per person in USD as a number, or null if not listed
- duration_minutes: duration in minutes as an integer, or null if not specified
- reservation_required: true if reservation is required, false if walk-ins accepted

Rules:
- Only include experiences currently bookable (not seasonal/past events)
- If price is listed as a range (e.g., "$50-75"), use the lower price
- If the page mentions complimentary tasting, set price to 0
- If no tasting experiences are found, return an empty array"""


def profile_prompt(venue_name: str) -> str:
    return f"""You are extracting winery information from {venue_name}'s website.

Extract the following:
- description: 2-3 sentences about what makes this winery special, its history, or what visitors should know. Write in third person.
- short_description: a single sentence tagline about the winery
- hours: operating hours as an object with keys mon, tue, wed, thu, fri, sat, sun. Each value should be a time range like "10:00-17:00" or "Closed". Use null if hours aren't listed.
- phone: phone number in format "(XXX) XXX-XXXX" or null
- email: email address or null
- reservation_required: true if the winery requires reservations for visits
- dog_friendly: true if dogs are explicitly welcomed
- picnic_friendly: true if picnic areas are available or mentioned

Rules:
- For description, focus on what's unique: winemaking philosophy, notable wines, estate features, views, history
- Do not make up information that isn't on the page
- Use null for any field you can't determine from the content"""


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


class Extractor:
    """
    One structured generation call per content category.

    Page text shorter than ``min_chars`` is treated as an empty page and
    never sent to the service.
    """

    def __init__(self, llm: LLMClient, *, min_chars: int = settings.min_extraction_chars):
        self.llm = llm
        self.min_chars = min_chars

    def _too_short(self, text: str) -> bool:
        return not text or len(text.strip()) < self.min_chars

    async def extract_offerings(self, venue_name: str, text: str) -> list[ExtractedOffering]:
        if self._too_short(text):
            return []
        result = await self.llm.extract_structured(
            offerings_prompt(venue_name), text, OfferingList, "offering_list"
        )
        return result.offerings

    async def extract_experiences(self, venue_name: str, text: str) -> list[ExtractedExperience]:
        if self._too_short(text):
            return []
        result = await self.llm.extract_structured(
            experiences_prompt(venue_name), text, ExperienceList, "experience_list"
        )
        return result.experiences

    async def extract_profile(self, venue_name: str, text: str) -> ProfileInfo:
        if self._too_short(text):
            return empty_profile()
        return await self.llm.extract_structured(
            profile_prompt(venue_name), text, ProfileInfo, "winery_info"
        )


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


async def main() -> None:
    """CLI: extract wines from a saved text file."""
    if len(sys.argv) < 3:
        print("Usage: python -m harvester.extractor <text_file> <winery_name>")
        sys.exit(1)

    text_file = Path(sys.argv[1])
    if not text_file.exists():
        print(f"File not found: {text_file}")
        sys.exit(1)

    async with httpx.AsyncClient() as client:
        llm = LLMClient(client)
        offerings = await Extractor(llm).extract_offerings(
            sys.argv[2], text_file.read_text(encoding="utf-8")
        )

    print(f"\n{'=' * 60}")
    print(f"EXTRACTED {len(offerings)} WINES")
    print(f"{'=' * 60}")
    for o in offerings:
        price = f"${o.price:g}" if o.price is not None else "n/a"
        print(f"  {o.vintage or 'NV'} | {o.name} | {o.offering_type} | {price}")
    print(f"\nTokens: {llm.usage.input_tokens} in / {llm.usage.output_tokens} out")


if __name__ == "__main__":
    asyncio.run(main())
