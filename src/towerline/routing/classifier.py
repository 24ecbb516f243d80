"""Authority classification for free-form work requests."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from towerline.core.models import Authority

CROSS_CUTTING_KEYWORDS = (
    "full-stack",
    "full stack",
    "release",
    "migrate",
    "sync",
    "cross-tower",
    "end-to-end",
)

PRIMARY_KEYWORDS = (
    "build",
    "design",
    "test",
    "code",
    "feature",
    "fix",
    "ui",
    "prototype",
    "research",
    "review",
    "refactor",
    "docs",
)

MIRROR_KEYWORDS = (
    "deploy",
    "rollback",
    "health-check",
    "ftp",
    "rsync",
    "file-watch",
    "uptime",
    "alerting",
    "log-analysis",
    "api-health",
    "rate-limit",
    "endpoint",
    "dns",
    "ssl",
    "subdomain",
    "backup",
    "migration",
    "query",
    "database",
    "server",
    "vps",
    "bandwidth",
    "monitor",
)


class Classifier(Protocol):
    def classify(self, text: str) -> Authority:
        """Pick the authority that should own a request."""
        ...


@dataclass(slots=True)
class KeywordScore:
    """Keyword hit counts behind one classification."""

    primary: int
    mirror: int
    cross_cutting: bool
    composite: bool


@dataclass(slots=True)
class KeywordClassifier:
    """Substring keyword heuristic.

    Rules, applied to lower-cased text:

    1. any cross-cutting keyword routes to both authorities;
    2. ``deploy`` together with ``build`` or ``test`` routes to both;
    3. otherwise mirror wins only with a positive score strictly above primary.
    """

    cross_cutting: tuple[str, ...] = CROSS_CUTTING_KEYWORDS
    primary_keywords: tuple[str, ...] = PRIMARY_KEYWORDS
    mirror_keywords: tuple[str, ...] = MIRROR_KEYWORDS

    def score(self, text: str) -> KeywordScore:
        lowered = (text or "").lower()
        return KeywordScore(
            primary=sum(1 for keyword in self.primary_keywords if keyword in lowered),
            mirror=sum(1 for keyword in self.mirror_keywords if keyword in lowered),
            cross_cutting=any(keyword in lowered for keyword in self.cross_cutting),
            composite="deploy" in lowered and ("build" in lowered or "test" in lowered),
        )

    def classify(self, text: str) -> Authority:
        score = self.score(text)
        if score.cross_cutting or score.composite:
            return Authority.BOTH
        if score.mirror > 0 and score.mirror > score.primary:
            return Authority.MIRROR
        return Authority.PRIMARY


def request_text(title: str | None, description: str | None) -> str:
    """Combined text used for classification and queue inference."""

    return f"{title or ''} {description or ''}".strip()
