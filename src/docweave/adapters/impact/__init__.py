"""Change impact adapters and factory."""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

import requests

from docweave.domain.documents.value_objects import AdapterConfig, DocumentSpec, UpdateConfigError
from docweave.ports.change_impact import ChangeImpactAnalyzer

from .loaders import (
    ChangeDescription,
    ChangeDescriptionLoader,
    ChangedFile,
    FileChangeLoader,
    GitHubPullRequestLoader,
)
from .rules import RuleBasedImpactAnalyzer


def build_change_impact_analyzer(
    project_root: Path,
    config: AdapterConfig,
    documents: Sequence[DocumentSpec],
    *,
    session: requests.Session | None = None,
) -> ChangeImpactAnalyzer:
    if config.type != "rules":
        raise UpdateConfigError(f"change impact analyzer type '{config.type}' is not supported")
    github_options = config.options.get("github") or {}
    loader = ChangeDescriptionLoader(
        FileChangeLoader(project_root),
        GitHubPullRequestLoader(github_options, session=session),
    )
    return RuleBasedImpactAnalyzer(documents, loader)


__all__ = [
    "ChangeDescription",
    "ChangeDescriptionLoader",
    "ChangedFile",
    "FileChangeLoader",
    "GitHubPullRequestLoader",
    "RuleBasedImpactAnalyzer",
    "build_change_impact_analyzer",
]
