"""Scenario configuration: a persona plus its FAQ knowledge base.

Each scenario is one markdown file in ``KNOWLEDGE_DIR`` named after the
scenario (``luxury_watches.md``)::

    # Luxury Watches

    ## Persona
    You are Aurelia, ...

    ## FAQ

    ### How long is the warranty?
    Every watch comes with ...

    ---

The registry is loaded once at start-up and is read-only afterwards.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from support_agent.config import KNOWLEDGE_DIR
from support_agent.errors import ScenarioNotFound
from support_agent.models import KnowledgeEntry, Scenario

logger = logging.getLogger(__name__)

_TITLE_RE = re.compile(r"^#\s+(.+?)\s*$", re.MULTILINE)
_SECTION_RE = re.compile(r"^##\s+(.+?)\s*$", re.MULTILINE)


def _split_sections(content: str) -> dict[str, str]:
    """Map each ``##`` heading (lower-cased) to the text below it."""
    parts = _SECTION_RE.split(content)
    # parts[0] is the preamble, then alternating heading/body pairs
    return {
        parts[i].strip().lower(): parts[i + 1].strip() if i + 1 < len(parts) else ""
        for i in range(1, len(parts), 2)
    }


def split_into_entries(content: str, scenario: str) -> list[KnowledgeEntry]:
    """Split the FAQ body into question/answer entries, in file order."""
    entries: list[KnowledgeEntry] = []
    # Split on ### headings (the questions)
    parts = re.split(r"###\s+(.+?)(?=\n)", content)

    for i in range(1, len(parts), 2):
        question = parts[i].strip()
        answer = parts[i + 1].strip() if i + 1 < len(parts) else ""
        answer = re.sub(r"(?:^|\n)---\s*$", "", answer).strip()
        if not question or not answer:
            logger.warning("Skipping incomplete FAQ entry %r in scenario %s", question, scenario)
            continue
        entries.append(KnowledgeEntry(question=question, answer=answer, scenario=scenario))

    return entries


def parse_scenario(name: str, content: str) -> Scenario:
    """Build a ``Scenario`` from the markdown content of its file."""
    title_match = _TITLE_RE.search(content)
    title = title_match.group(1) if title_match else name.replace("_", " ").title()
    sections = _split_sections(content)

    persona = sections.get("persona", "")
    if not persona:
        raise ValueError(f"Scenario {name!r} has no '## Persona' section")

    entries = split_into_entries(sections.get("faq", ""), scenario=name)
    return Scenario(name=name, title=title, persona=persona, entries=tuple(entries))


class ScenarioRegistry:
    """Read-only lookup of scenarios by name."""

    def __init__(self, scenarios: dict[str, Scenario]):
        self._scenarios = dict(scenarios)

    @classmethod
    def from_directory(cls, directory: Path | None = None) -> ScenarioRegistry:
        """Load every ``*.md`` file in *directory* as a scenario."""
        directory = directory or KNOWLEDGE_DIR
        scenarios: dict[str, Scenario] = {}
        for path in sorted(directory.glob("*.md")):
            scenario = parse_scenario(path.stem, path.read_text(encoding="utf-8"))
            scenarios[scenario.name] = scenario
            logger.debug(
                "Loaded scenario %s (%d FAQ entries) from %s",
                scenario.name, len(scenario.entries), path,
            )
        if not scenarios:
            logger.error("No scenario files found in %s", directory)
        return cls(scenarios)

    def get(self, name: str) -> Scenario:
        try:
            return self._scenarios[name]
        except KeyError:
            raise ScenarioNotFound(name) from None

    def names(self) -> list[str]:
        return sorted(self._scenarios)

    def __contains__(self, name: object) -> bool:
        return name in self._scenarios
