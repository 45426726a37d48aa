"""Section extractor for LLM-generated postmortem text.

Completions carry labeled section markers (``[BUSINESS_IMPACT]``,
``[MITIGATION]``, ``[CAUSAL_ANALYSIS]``). Each field is read by a small rule
with a primary pattern and a documented fallback, so one malformed line never
discards the rest of a generation. Nothing in this module raises on bad
model output; degradations are logged as warnings.
"""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from postmortem_kg.parsing import find_json_array, parse_array_literal, strip_code_fences
from postmortem_kg.postmortem.models import (
    UNKNOWN_APPLICATION,
    BusinessImpact,
    CausalFactor,
    ExtractedSections,
    GenerationStage,
    IncidentContext,
    compute_duration_minutes,
    parse_causal_factors,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

_MARKER = re.compile(
    r"\[(" + "|".join(stage.value.upper() for stage in GenerationStage) + r")\]"
)

# Labels of the business-impact block. Description runs until the next one.
_IMPACT_LABELS = (
    "Application",
    "Start Time",
    "End Time",
    "Description",
    "Affected Countries",
    "Regulatory Reporting",
    "Regulatory Entity",
)

# Tolerates markdown bold around the label: "**Application:** x"
_LABEL_PREFIX = r"^[ \t]*(?:[-*][ \t]+)?(?:\*\*)?"
_LABEL_SUFFIX = r"(?:\*\*)?[ \t]*:(?:\*\*)?[ \t]*"

_NEXT_LABEL = (
    _LABEL_PREFIX
    + "(?:"
    + "|".join(re.escape(label) for label in _IMPACT_LABELS)
    + ")"
    + _LABEL_SUFFIX
)

_BOOLEAN_WORDS = {"true": True, "yes": True, "false": False, "no": False}


def _line_pattern(label: str) -> re.Pattern:
    return re.compile(_LABEL_PREFIX + re.escape(label) + _LABEL_SUFFIX + r"(.*?)[ \t]*$", re.M | re.I)


_APPLICATION = _line_pattern("Application")
_START_TIME = _line_pattern("Start Time")
_END_TIME = _line_pattern("End Time")
_REGULATORY_REPORTING = _line_pattern("Regulatory Reporting")
_REGULATORY_ENTITY = _line_pattern("Regulatory Entity")
_COUNTRIES_ARRAY = re.compile(
    _LABEL_PREFIX + r"Affected Countries" + _LABEL_SUFFIX + r"(\[[\s\S]*?\])", re.M | re.I
)
_DESCRIPTION = re.compile(
    _LABEL_PREFIX + r"Description" + _LABEL_SUFFIX + r"(.*?)(?=" + _NEXT_LABEL + r"|\Z)",
    re.M | re.I | re.S,
)


@dataclass(frozen=True)
class FieldRule:
    """A field read: primary pattern, value parser, then fallback."""

    name: str
    pattern: re.Pattern
    parse: Callable[[str], Any]
    fallback: Callable[[IncidentContext], Any]

    def read(self, body: str, context: IncidentContext) -> Any:
        match = self.pattern.search(body)
        if match:
            value = self.parse(match.group(1).strip())
            if value is not None:
                return value
            logger.warning(f"Unparsable {self.name} value '{match.group(1).strip()}', using fallback")
        return self.fallback(context)


def _non_empty(text: str) -> str | None:
    return text.strip("\"'").strip() or None


def _application_fallback(context: IncidentContext) -> str:
    if context.services and context.services[0].service_name:
        return context.services[0].service_name
    return context.title or UNKNOWN_APPLICATION


def _parse_boolean(text: str) -> bool | None:
    words = text.strip("\"'").split()
    if not words:
        return None
    return _BOOLEAN_WORDS.get(words[0].lower().rstrip(".,"))


def _parse_countries(text: str) -> list[str] | None:
    values = parse_array_literal(text)
    if values is None:
        return None
    countries: list[str] = []
    for value in values:
        code = str(value).strip() if value is not None else ""
        if code and code not in countries:
            countries.append(code)
    return countries


APPLICATION_RULE = FieldRule("Application", _APPLICATION, _non_empty, _application_fallback)
START_TIME_RULE = FieldRule("Start Time", _START_TIME, parse_timestamp, lambda ctx: ctx.detected_at)
END_TIME_RULE = FieldRule("End Time", _END_TIME, parse_timestamp, lambda ctx: ctx.resolved_at)
COUNTRIES_RULE = FieldRule("Affected Countries", _COUNTRIES_ARRAY, _parse_countries, lambda ctx: [])
REGULATORY_REPORTING_RULE = FieldRule(
    "Regulatory Reporting", _REGULATORY_REPORTING, _parse_boolean, lambda ctx: False
)


def _read_regulatory_entity(body: str, reporting: bool) -> str | None:
    if not reporting:
        return None
    match = _REGULATORY_ENTITY.search(body)
    if not match:
        return None
    entity = match.group(1).strip().strip("\"'").strip()
    if not entity or entity.lower() == "n/a":
        return None
    return entity


def _read_description(body: str) -> str | None:
    match = _DESCRIPTION.search(body)
    if not match:
        return None
    return match.group(1).strip() or None


def split_sections(text: str) -> dict[GenerationStage, str]:
    """Map each known marker to its body (up to the next known marker).

    The first occurrence of a marker wins.
    """
    sections: dict[GenerationStage, str] = {}
    matches = list(_MARKER.finditer(text or ""))
    for index, match in enumerate(matches):
        stage = GenerationStage(match.group(1).lower())
        end = matches[index + 1].start() if index + 1 < len(matches) else len(text)
        sections.setdefault(stage, text[match.end():end].strip())
    return sections


def extract_business_impact(body: str, context: IncidentContext) -> BusinessImpact:
    """Read the business-impact block, falling back to incident data."""
    start = START_TIME_RULE.read(body, context)
    end = END_TIME_RULE.read(body, context)
    reporting = REGULATORY_REPORTING_RULE.read(body, context)

    if _COUNTRIES_ARRAY.search(body) is None and re.search(r"Affected Countries", body, re.I):
        logger.warning("Affected Countries is not an array literal, defaulting to []")

    return BusinessImpact(
        application=APPLICATION_RULE.read(body, context),
        start=start,
        end=end,
        duration_minutes=compute_duration_minutes(start, end),
        description=_read_description(body),
        affected_countries=COUNTRIES_RULE.read(body, context),
        regulatory_reporting=reporting,
        regulatory_entity=_read_regulatory_entity(body, reporting),
    )


def extract_mitigation(body: str) -> str | None:
    """The trimmed section body, verbatim."""
    return body.strip() or None


def extract_causal_analysis(body: str) -> list[CausalFactor]:
    """Recover the causal-factor array from the section body.

    Fences are stripped, the first complete array of objects is parsed, and
    factors missing required fields are dropped. Returns [] when no array can
    be recovered.
    """
    items = find_json_array(strip_code_fences(body), require_objects=True)
    if items is None:
        if body.strip():
            logger.warning("No causal analysis array found in completion")
        return []
    return parse_causal_factors(items)


class SectionExtractor:
    """Parses completion text into structured postmortem sections."""

    def extract(self, text: str, context: IncidentContext) -> ExtractedSections:
        """Extract every section present in a single-shot completion.

        Args:
            text: Raw completion text
            context: Incident used for field fallbacks

        Returns:
            Sections found; absent sections stay empty
        """
        sections = split_sections(text)
        if not sections:
            logger.warning("Completion contained no section markers")

        result = ExtractedSections()
        for stage, body in sections.items():
            self._fill(result, stage, body, context)
        return result

    def extract_stage(
        self, text: str, stage: GenerationStage, context: IncidentContext
    ) -> ExtractedSections:
        """Extract one stage's section from a per-stage completion.

        A completion with no markers at all is read as the bare body of
        ``stage``. A completion with other markers but not this one yields an
        empty result.
        """
        sections = split_sections(text)
        if stage in sections:
            body = sections[stage]
        elif not sections:
            logger.debug(f"No markers in {stage.value} completion, reading whole text")
            body = (text or "").strip()
        else:
            logger.warning(f"Completion for {stage.value} lacks its {stage.marker} marker")
            return ExtractedSections()

        result = ExtractedSections()
        self._fill(result, stage, body, context)
        return result

    def _fill(
        self,
        result: ExtractedSections,
        stage: GenerationStage,
        body: str,
        context: IncidentContext,
    ) -> None:
        if stage == GenerationStage.BUSINESS_IMPACT:
            if body:
                result.business_impact = extract_business_impact(body, context)
        elif stage == GenerationStage.MITIGATION:
            result.mitigation_description = extract_mitigation(body)
        else:
            result.causal_analysis = extract_causal_analysis(body)
