"""Rule-based change impact analysis over touched file paths."""

from __future__ import annotations

import re
from fnmatch import fnmatchcase
from pathlib import PurePosixPath
from typing import Dict, List, Mapping, Pattern, Sequence, Tuple

from docweave.domain.documents.value_objects import DocumentSpec
from docweave.ports.change_impact import ChangeImpactAnalyzer, ChangeSet, RiskLevel

from .loaders import ChangeDescription, ChangeDescriptionLoader

IMPACT_AREAS: Dict[str, Pattern[str]] = {
    "frontend": re.compile(r"src/.*\.(jsx?|tsx?|vue|html|css|scss|less)$|client|ui|components", re.I),
    "backend": re.compile(r"src/.*\.(py|java|cs|rb|go|rs)$|server|api|service|controller", re.I),
    "database": re.compile(r"migrations?|schema|\.sql$|models?|entities", re.I),
    "api": re.compile(r"api|endpoint|route|controller|graphql", re.I),
    "tests": re.compile(r"test|spec|__tests__|\.test\.|\.spec\.", re.I),
    "documentation": re.compile(r"\.md$|docs?|readme|changelog", re.I),
    "configuration": re.compile(r"config|\.json$|\.ya?ml$|\.toml$|\.ini$|dockerfile", re.I),
    "infrastructure": re.compile(r"terraform|ansible|kubernetes|docker|\.tf$|\.yml$", re.I),
    "security": re.compile(r"auth|security|permission|token|encrypt|ssl|tls", re.I),
    "performance": re.compile(r"cache|optimize|performance|benchmark|metrics", re.I),
}

BREAKING_CHANGE_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"BREAKING\s*CHANGE", re.I),
    re.compile(r"breaking:", re.I),
    re.compile(r"major:", re.I),
    re.compile(r"removed?.*deprecated", re.I),
    re.compile(r"deleted?.*api", re.I),
    re.compile(r"changed?.*signature", re.I),
    re.compile(r"incompatible", re.I),
)

RISK_FACTORS: Dict[str, Pattern[str]] = {
    "high": re.compile(r"core|critical|main|index|app\.|root|base", re.I),
    "medium": re.compile(r"service|controller|manager|handler", re.I),
    "data": re.compile(r"migration|schema|model|database", re.I),
    "api": re.compile(r"endpoint|route|api|graphql", re.I),
    "security": re.compile(r"auth|security|permission|token|password", re.I),
}

# documentation needs derived from impact areas, and the file names that serve them
RELATED_DOCUMENTS: Dict[str, Tuple[str, ...]] = {
    "api": ("api.md", "api-reference.md", "endpoints.md"),
    "frontend": ("readme.md", "user-guide.md", "getting-started.md"),
    "backend": ("architecture.md", "deployment.md", "technical-guide.md"),
    "infrastructure": ("architecture.md", "deployment.md", "technical-guide.md"),
    "breaking": ("migration.md", "changelog.md", "breaking-changes.md"),
    "security": ("security.md", "auth-guide.md", "security-policy.md"),
}

HIGH_RISK_CHANGES = 1000
MEDIUM_RISK_CHANGES = 300
MEDIUM_RISK_FACTORS = 3


class RuleBasedImpactAnalyzer(ChangeImpactAnalyzer):
    """Maps a change description onto the configured documents.

    A document is impacted when one of its dependency patterns matches a touched
    file, when one of its ``impact_areas`` is hit, or when its file name is one
    of the documents conventionally serving a hit area.
    """

    def __init__(self, documents: Sequence[DocumentSpec], loader: ChangeDescriptionLoader) -> None:
        self._documents = list(documents)
        self._loader = loader

    def analyze(self, ref: str) -> ChangeSet:
        return self.analyze_description(self._loader.load(ref))

    def analyze_description(self, description: ChangeDescription) -> ChangeSet:
        areas: Dict[str, int] = {}
        risk_factors: List[Dict[str, str]] = []
        breaking: List[str] = []
        total_changes = 0

        text_sources = [description.title, description.body, *description.labels]
        for text in text_sources:
            breaking.extend(_breaking_indicators(text))
        for changed in description.files:
            total_changes += changed.changes
            for area, pattern in IMPACT_AREAS.items():
                if pattern.search(changed.filename):
                    areas[area] = areas.get(area, 0) + 1
            for risk, pattern in RISK_FACTORS.items():
                if pattern.search(changed.filename):
                    risk_factors.append({"file": changed.filename, "risk": risk})
            breaking.extend(_breaking_indicators(changed.patch))
            breaking.extend(_breaking_indicators(changed.filename))
        breaking = list(dict.fromkeys(breaking))

        risk_level = _risk_level(risk_factors, total_changes, bool(breaking))
        filenames = [changed.filename for changed in description.files]
        impacted = self._impacted(filenames, set(areas), bool(breaking))
        rationale = _rationale(description, total_changes, areas, breaking, risk_level)
        return ChangeSet(
            impacted_documents=tuple(impacted),
            risk_level=risk_level,
            rationale=rationale,
            changed_sources=tuple(dict.fromkeys(filenames)),
            ref=description.ref,
            details={
                "impactAreas": dict(sorted(areas.items())),
                "riskFactors": risk_factors,
                "breakingChanges": breaking,
                "totalChanges": total_changes,
                "files": len(filenames),
            },
        )

    def _impacted(self, filenames: Sequence[str], areas: set, breaking: bool) -> List[str]:
        related = set()
        for area in areas:
            related.update(RELATED_DOCUMENTS.get(area, ()))
        if breaking:
            related.update(RELATED_DOCUMENTS["breaking"])
        impacted: List[str] = []
        for spec in self._documents:
            hit_dependency = any(_matches(name, spec.dependencies) for name in filenames)
            hit_area = bool(areas.intersection(spec.impact_areas))
            hit_related = PurePosixPath(spec.path).name.lower() in related
            if hit_dependency or hit_area or hit_related:
                impacted.append(spec.path)
        return impacted


def _matches(filename: str, patterns: Sequence[str]) -> bool:
    for pattern in patterns:
        if filename == pattern or fnmatchcase(filename, pattern):
            return True
        if pattern.endswith("/") and filename.startswith(pattern):
            return True
    return False


def _breaking_indicators(text: str) -> List[str]:
    if not text:
        return []
    return [pattern.pattern for pattern in BREAKING_CHANGE_PATTERNS if pattern.search(text)]


def _risk_level(risk_factors: Sequence[Mapping[str, str]], total_changes: int, breaking: bool) -> RiskLevel:
    high_risk_files = sum(1 for factor in risk_factors if factor["risk"] == "high")
    if high_risk_files or total_changes > HIGH_RISK_CHANGES or breaking:
        return RiskLevel.HIGH
    if len(risk_factors) > MEDIUM_RISK_FACTORS or total_changes > MEDIUM_RISK_CHANGES:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def _rationale(
    description: ChangeDescription,
    total_changes: int,
    areas: Mapping[str, int],
    breaking: Sequence[str],
    risk_level: RiskLevel,
) -> str:
    parts = [f"{len(description.files)} file(s) changed, {total_changes} line(s) touched"]
    if areas:
        parts.append("impact areas: " + ", ".join(sorted(areas)))
    if breaking:
        parts.append(f"{len(breaking)} breaking change indicator(s)")
    parts.append(f"risk {risk_level.value}")
    return "; ".join(parts)
