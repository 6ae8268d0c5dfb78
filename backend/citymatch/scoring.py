"""Rule-based comparison of a prompt city and a player's answer."""

import math
import re
from typing import Optional

from .models import Facts, RuleChecks, ScoreResult

STARTS_WITH_POINTS = 1
ENDS_WITH_POINTS = 1
SAME_LENGTH_POINTS = 1
SAME_COUNTRY_POINTS = 1
SHARED_LANGUAGE_POINTS = 1
POPULATION_SIMILAR_POINTS = 2
FOUNDED_SAME_CENTURY_POINTS = 3

MAX_POINTS = (
    STARTS_WITH_POINTS
    + ENDS_WITH_POINTS
    + SAME_LENGTH_POINTS
    + SAME_COUNTRY_POINTS
    + SHARED_LANGUAGE_POINTS
    + POPULATION_SIMILAR_POINTS
    + FOUNDED_SAME_CENTURY_POINTS
)

POPULATION_TOLERANCE = 0.20

_WHITESPACE = re.compile(r"\s+")


def normalize(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def compact(value: Optional[str]) -> str:
    return _WHITESPACE.sub("", normalize(value))


def century(year: int) -> int:
    return math.floor((year - 1) / 100) + 1


def _number(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value or None


def _positive_number(value) -> Optional[float]:
    number = _number(value)
    return number if number and number > 0 else None


def score(prompt_name: str, answer_name: str, prompt_facts: Facts, answer_facts: Facts) -> ScoreResult:
    """Score one answer against the round's prompt.

    Every rule is independent and additive; missing facts only withhold the
    points of the rule that needs them.
    """
    prompt = normalize(prompt_name)
    answer = normalize(answer_name)
    checks = RuleChecks()
    points = 0

    if prompt and answer and answer[0] == prompt[0]:
        checks.starts_with = True
        points += STARTS_WITH_POINTS

    if prompt and answer and answer[-1] == prompt[-1]:
        checks.ends_with = True
        points += ENDS_WITH_POINTS

    if len(compact(answer_name)) == len(compact(prompt_name)):
        checks.same_length = True
        points += SAME_LENGTH_POINTS

    country_a = normalize(prompt_facts.country)
    country_b = normalize(answer_facts.country)
    if country_a and country_b and country_a == country_b:
        checks.same_country = True
        points += SAME_COUNTRY_POINTS

    langs_a = {normalize(lang) for lang in prompt_facts.languages if normalize(lang)}
    langs_b = {normalize(lang) for lang in answer_facts.languages if normalize(lang)}
    if langs_a & langs_b:
        checks.shared_language = True
        points += SHARED_LANGUAGE_POINTS

    pop_a = _positive_number(prompt_facts.population)
    pop_b = _positive_number(answer_facts.population)
    if pop_a and pop_b:
        ratio = abs(pop_a - pop_b) / max(pop_a, pop_b)
        if ratio <= POPULATION_TOLERANCE:
            checks.population_similar = True
            points += POPULATION_SIMILAR_POINTS

    year_a = _number(prompt_facts.founded_year)
    year_b = _number(answer_facts.founded_year)
    if year_a and year_b and century(int(year_a)) == century(int(year_b)):
        checks.founded_same_century = True
        points += FOUNDED_SAME_CENTURY_POINTS

    return ScoreResult(points=points, checks=checks)
