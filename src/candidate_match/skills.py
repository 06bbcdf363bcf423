"""Skill extraction from free-text project requirements."""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable, Iterable

from candidate_match.schemas import ProjectRequest

log = logging.getLogger(__name__)

_NON_TOKEN = re.compile(r"[^A-Za-z0-9\- ]")

DEFAULT_ALIASES: dict[str, str] = {
    "K8S": "KUBERNETES",
    "SPRINGBOOT": "SPRING BOOT",
    "SPRING-BOOT": "SPRING BOOT",
    "JS": "JAVASCRIPT",
    "TS": "TYPESCRIPT",
    "POSTGRES": "POSTGRESQL",
    "GOLANG": "GO",
    "REACTJS": "REACT",
    "NODEJS": "NODE.JS",
    "NODE": "NODE.JS",
}


def normalize_skill(skill: str) -> str:
    return skill.strip().upper()


def tokenize(text: str) -> list[str]:
    """Split *text* into word tokens of two or more characters.

    Anything that is not a letter, a digit, a hyphen or a space acts as a
    separator, so "C#/.NET" yields "NET" and "Spring-Boot" stays one token.
    """
    cleaned = _NON_TOKEN.sub(" ", text)
    return [t for t in cleaned.split() if len(t) >= 2]


def bigrams(tokens: list[str]) -> list[str]:
    return [f"{a} {b}" for a, b in zip(tokens, tokens[1:])]


class SkillCatalog:
    """Known skill names, loaded lazily and cached.

    *loader* returns the raw skill names (any case). Aliases map alternative
    spellings onto a canonical name; a token resolved through an alias is kept
    only when its canonical name is itself known. An empty load is not cached,
    so skills imported after start-up show up on the next lookup.
    """

    def __init__(
        self,
        loader: Callable[[], Iterable[str]],
        aliases: dict[str, str] | None = None,
    ) -> None:
        self._loader = loader
        self._aliases = {normalize_skill(k): normalize_skill(v) for k, v in DEFAULT_ALIASES.items()}
        if aliases:
            self._aliases.update({normalize_skill(k): normalize_skill(v) for k, v in aliases.items()})
        self._known: frozenset[str] | None = None
        self._lock = threading.Lock()

    def known(self) -> frozenset[str]:
        with self._lock:
            if self._known is None:
                try:
                    names = self._loader()
                except Exception:
                    log.exception("Failed to load skill catalog; treating it as empty")
                    return frozenset()
                known = frozenset(normalize_skill(n) for n in names if n and n.strip())
                log.debug("Loaded %d known skills", len(known))
                if not known:
                    return known
                self._known = known
            return self._known

    def refresh(self) -> None:
        with self._lock:
            self._known = None

    def canonical(self, token: str) -> str:
        name = normalize_skill(token)
        return self._aliases.get(name, name)

    def normalize_and_filter(self, tokens: Iterable[str]) -> set[str]:
        known = self.known()
        result = set()
        for token in tokens:
            if not token or not token.strip():
                continue
            name = self.canonical(token)
            if name in known:
                result.add(name)
        return result


class SkillExtractor:
    def __init__(self, catalog: SkillCatalog) -> None:
        self.catalog = catalog

    def extract(self, request: ProjectRequest) -> set[str]:
        """Return the known skills mentioned anywhere in the request text."""
        parts = [request.title, request.summary, request.description]
        for req in request.requirements:
            parts.append(req.name)
            parts.append(req.details)
        text = " ".join(p for p in parts if p)
        if not text.strip():
            return set()

        tokens = tokenize(text)
        candidates = tokens + bigrams(tokens)
        skills = self.catalog.normalize_and_filter(candidates)
        log.debug("Extracted %d skills from project request %s: %s", len(skills), request.id, sorted(skills))
        return skills
