"""Resolve change-set references into raw change descriptions."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import requests
import yaml

from docweave.domain.documents.errors import retryable_status
from docweave.ports.change_impact import ChangeSetError
from docweave.utils.config import load_structured_file

PR_REF_RE = re.compile(r"^(?P<owner>[\w.-]+)/(?P<repo>[\w.-]+)#(?P<number>\d+)$")
DEFAULT_API_URL = "https://api.github.com"


@dataclass(frozen=True)
class ChangedFile:
    filename: str
    additions: int = 0
    deletions: int = 0
    patch: str = ""
    status: str = "modified"

    @property
    def changes(self) -> int:
        return self.additions + self.deletions


@dataclass(frozen=True)
class ChangeDescription:
    ref: str
    title: str = ""
    body: str = ""
    labels: Tuple[str, ...] = ()
    files: Tuple[ChangedFile, ...] = ()
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, ref: str, data: Mapping[str, Any]) -> "ChangeDescription":
        raw_files = data.get("files") or []
        if not isinstance(raw_files, list):
            raise ChangeSetError(f"change description {ref}: 'files' must be a list")
        files: List[ChangedFile] = []
        for entry in raw_files:
            if isinstance(entry, str):
                files.append(ChangedFile(filename=entry))
                continue
            if not isinstance(entry, Mapping) or not entry.get("filename"):
                raise ChangeSetError(f"change description {ref}: each file needs a 'filename'")
            files.append(
                ChangedFile(
                    filename=str(entry["filename"]),
                    additions=int(entry.get("additions") or 0),
                    deletions=int(entry.get("deletions") or 0),
                    patch=str(entry.get("patch") or ""),
                    status=str(entry.get("status") or "modified"),
                )
            )
        labels = data.get("labels") or []
        return cls(
            ref=str(data.get("ref") or ref),
            title=str(data.get("title") or ""),
            body=str(data.get("body") or ""),
            labels=tuple(
                str(label.get("name")) if isinstance(label, Mapping) else str(label) for label in labels
            ),
            files=tuple(files),
        )


class FileChangeLoader:
    """Reads a JSON or YAML change description relative to the project root."""

    def __init__(self, project_root: Path) -> None:
        self._root = project_root

    def resolve(self, ref: str) -> Optional[Path]:
        path = Path(ref)
        if not path.is_absolute():
            path = self._root / path
        return path if path.is_file() else None

    def load(self, ref: str) -> ChangeDescription:
        path = self.resolve(ref)
        if path is None:
            raise ChangeSetError(f"change description file {ref} not found")
        try:
            data = load_structured_file(path)
        except (OSError, yaml.YAMLError) as exc:
            raise ChangeSetError(f"change description {path} is unreadable: {exc}") from exc
        if not isinstance(data, Mapping):
            raise ChangeSetError(f"change description {path} must be a mapping")
        return ChangeDescription.from_dict(ref, data)


class GitHubPullRequestLoader:
    """Fetches a pull request and its changed files from the GitHub API."""

    def __init__(self, options: Mapping[str, Any], session: requests.Session | None = None) -> None:
        self._api_url = str(options.get("api_url") or DEFAULT_API_URL).rstrip("/")
        self._token_env = options.get("token_env", "GITHUB_TOKEN")
        self._timeout = float(options.get("timeout", 30))
        self._session = session or requests.Session()

    @staticmethod
    def matches(ref: str) -> bool:
        return PR_REF_RE.match(ref.strip()) is not None

    def load(self, ref: str) -> ChangeDescription:
        match = PR_REF_RE.match(ref.strip())
        if match is None:
            raise ChangeSetError(f"'{ref}' is not an owner/repo#number reference")
        base = f"{self._api_url}/repos/{match['owner']}/{match['repo']}/pulls/{match['number']}"
        pull = self._get_json(base)
        if not isinstance(pull, dict):
            raise ChangeSetError(f"unexpected pull request payload for {ref}")
        files: List[Dict[str, Any]] = []
        url: Optional[str] = f"{base}/files"
        params: Dict[str, Any] = {"per_page": 100}
        while url:
            response = self._request(url, params)
            params = {}  # next pages come from the Link header
            page = response.json()
            if isinstance(page, list):
                files.extend(item for item in page if isinstance(item, dict))
            url = _next_link(response.headers.get("Link"))
        data = {
            "ref": ref,
            "title": pull.get("title"),
            "body": pull.get("body"),
            "labels": pull.get("labels") or [],
            "files": files,
        }
        return ChangeDescription.from_dict(ref, data)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/vnd.github+json"}
        token = os.environ.get(str(self._token_env)) if self._token_env else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _get_json(self, url: str) -> Any:
        return self._request(url, {}).json()

    def _request(self, url: str, params: Dict[str, Any]) -> requests.Response:
        try:
            response = self._session.get(url, params=params, headers=self._headers(), timeout=self._timeout)
        except requests.RequestException as exc:
            raise ChangeSetError(f"github request failed: {exc}", retryable=True) from exc
        if response.status_code >= 400:
            raise ChangeSetError(
                f"github request failed: {response.status_code} {response.text}",
                retryable=retryable_status(response.status_code),
            )
        return response


class ChangeDescriptionLoader:
    """Dispatches a reference to the file loader or the pull-request loader."""

    def __init__(self, files: FileChangeLoader, pulls: GitHubPullRequestLoader) -> None:
        self._files = files
        self._pulls = pulls

    def load(self, ref: str) -> ChangeDescription:
        if self._files.resolve(ref) is not None:
            return self._files.load(ref)
        if self._pulls.matches(ref):
            return self._pulls.load(ref)
        raise ChangeSetError(f"cannot resolve change set '{ref}'")


def _next_link(link_header: str | None) -> str | None:
    if not link_header:
        return None
    for part in (chunk.strip() for chunk in link_header.split(",")):
        if 'rel="next"' in part:
            url_part, _ = part.split(";", 1)
            return url_part.strip(" <>")
    return None
