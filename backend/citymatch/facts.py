from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Optional, Protocol

from openai import AsyncOpenAI
from pydantic import ValidationError

from .config import Settings
from .models import Facts

logger = logging.getLogger(__name__)

MIN_CITY_NAME_LENGTH = 2

_JSON_BLOCK = re.compile(r"\{[\s\S]*\}")

CITY_SCHEMA = {
    "name": "city_schema",
    "schema": {
        "type": "object",
        "properties": {
            "city": {"type": "string"},
            "country": {"type": ["string", "null"]},
            "languages": {"type": "array", "items": {"type": "string"}},
            "population": {"type": ["integer", "null"]},
            "foundedYear": {"type": ["integer", "null"]},
        },
        "required": ["city", "country", "languages", "population", "foundedYear"],
    },
}

SYSTEM_PROMPT = "Return ONLY JSON."

USER_PROMPT = """Return VALID JSON following the schema.
If a value is unknown, set null.

Schema:
{{
  "city": string,
  "country": string|null,
  "languages": [string],
  "population": integer|null,
  "foundedYear": integer|null
}}

City: "{name}"
"""


class FactLookupError(RuntimeError):
    """The lookup service failed or answered with something unusable."""


class FactsLookup(Protocol):
    async def lookup(self, name: str) -> Facts: ...


def _coerce_int(value: Any, *, allow_negative: bool) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        value = value.strip().replace(",", "")
    try:
        number = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None
    if number == 0 or (number < 0 and not allow_negative):
        return None
    return number


def facts_from_payload(name: str, payload: Any) -> Facts:
    """Build a Facts record from a loosely shaped lookup payload.

    Raises FactLookupError when the payload is not an object at all; missing
    or badly typed fields just become unknown.
    """
    if not isinstance(payload, dict):
        raise FactLookupError(f"expected an object for {name!r}, got {type(payload).__name__}")

    country = payload.get("country")
    if not isinstance(country, str) or not country.strip():
        country = None
    languages = payload.get("languages") or []
    if not isinstance(languages, list):
        languages = []

    try:
        return Facts(
            name=str(payload.get("city") or payload.get("name") or name),
            country=country.strip() if country else None,
            languages=[lang.strip() for lang in languages if isinstance(lang, str) and lang.strip()],
            population=_coerce_int(payload.get("population"), allow_negative=False),
            founded_year=_coerce_int(payload.get("foundedYear"), allow_negative=True),
        )
    except ValidationError as exc:
        raise FactLookupError(f"malformed facts for {name!r}: {exc}") from exc


def extract_json(text: str) -> Optional[Dict[str, Any]]:
    match = _JSON_BLOCK.search(text or "")
    if not match:
        return None
    try:
        return json.loads(match.group(0))
    except json.JSONDecodeError:
        return None


class OpenAIFactsLookup:
    """Ask a chat model for structured facts about a city."""

    def __init__(self, settings: Settings, client: Optional[AsyncOpenAI] = None):
        self.model = settings.OPENAI_MODEL
        self._client = client or AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            timeout=settings.FACTS_TIMEOUT_SEC,
            max_retries=0,
        )

    async def lookup(self, name: str) -> Facts:
        try:
            completion = await self._client.chat.completions.create(
                model=self.model,
                temperature=0,
                response_format={"type": "json_schema", "json_schema": CITY_SCHEMA},
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": USER_PROMPT.format(name=name)},
                ],
            )
        except Exception as exc:
            raise FactLookupError(f"lookup request for {name!r} failed: {exc}") from exc

        content = ""
        if completion.choices:
            content = completion.choices[0].message.content or ""
        logger.debug(f"[facts-raw] name={name!r} content={content!r}")

        payload = extract_json(content)
        if payload is None:
            raise FactLookupError(f"no JSON in lookup response for {name!r}")
        return facts_from_payload(name, payload)


class CannedFactsLookup:
    """Offline lookup: known cities from a table, a fixed record for the rest."""

    DEFAULT_RECORD = {
        "country": "Unknown",
        "languages": ["Unknown"],
        "population": 100000,
        "foundedYear": 1500,
    }

    def __init__(self, table: Optional[Dict[str, Dict[str, Any]]] = None, default: Optional[Dict[str, Any]] = None):
        self._table = {key.strip().lower(): value for key, value in (table or {}).items()}
        self._default = self.DEFAULT_RECORD if default is None else default

    async def lookup(self, name: str) -> Facts:
        record = self._table.get(name.strip().lower(), self._default)
        return facts_from_payload(name, {"city": name, **record})


def build_lookup(settings: Settings) -> FactsLookup:
    if settings.FAKE_FACTS or not settings.OPENAI_API_KEY:
        if not settings.FAKE_FACTS:
            logger.warning("OPENAI_API_KEY is not set; using canned city facts")
        return CannedFactsLookup()
    return OpenAIFactsLookup(settings)


class FactResolver:
    """Best-effort facts: a failed lookup degrades to an empty record."""

    def __init__(self, lookup: FactsLookup):
        self._lookup = lookup

    async def resolve(self, name: Optional[str]) -> Facts:
        cleaned = (name or "").strip()
        if not cleaned:
            return Facts.empty()

        try:
            facts = await self._lookup.lookup(cleaned)
        except Exception as exc:
            logger.warning(f"[facts-fallback] name={cleaned!r} error={exc}")
            return Facts.empty(cleaned)

        if not isinstance(facts, Facts):
            logger.warning(f"[facts-fallback] name={cleaned!r} unexpected result type {type(facts).__name__}")
            return Facts.empty(cleaned)
        return facts


def is_invalid_city(answer: str, facts: Facts) -> bool:
    return len(answer.strip()) < MIN_CITY_NAME_LENGTH or facts.is_empty()


def is_equivalent_city(prompt: str, answer: str, facts: Facts) -> bool:
    target = prompt.strip().lower()
    if not target or not answer.strip():
        return False
    return answer.strip().lower() == target or facts.name.strip().lower() == target
