"""Content source backed by an HTTP generation service."""

from __future__ import annotations

import os
from typing import Any, Dict, Mapping

import requests

from docweave.domain.documents.errors import retryable_status
from docweave.ports.content_source import ContentSource, GenerationError


class HttpContentSource(ContentSource):
    """POSTs ``{"docType", "context"}`` and expects ``{"content": "..."}`` or markdown back."""

    def __init__(self, options: Mapping[str, Any], session: requests.Session | None = None) -> None:
        endpoint = options.get("endpoint") or options.get("url")
        if not isinstance(endpoint, str) or not endpoint.strip():
            raise GenerationError("http content source requires 'endpoint'")
        self._endpoint = endpoint.strip()
        self._token_env = options.get("token_env")
        self._timeout = float(options.get("timeout", 30))
        headers = options.get("headers") or {}
        self._headers: Dict[str, str] = {str(key): str(value) for key, value in dict(headers).items()}
        self._session = session or requests.Session()

    def generate(self, doc_type: str, context: Mapping[str, Any]) -> str:
        headers = {"Accept": "application/json, text/markdown", **self._headers}
        if self._token_env:
            token = os.environ.get(str(self._token_env))
            if not token:
                raise GenerationError(
                    f"http content source token missing in environment variable '{self._token_env}'"
                )
            headers["Authorization"] = f"Bearer {token}"
        try:
            response = self._session.post(
                self._endpoint,
                json={"docType": doc_type, "context": dict(context)},
                headers=headers,
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise GenerationError(f"http content source request failed: {exc}", retryable=True) from exc
        if response.status_code >= 400:
            raise GenerationError(
                f"http content source request failed: {response.status_code} {response.text}",
                retryable=retryable_status(response.status_code),
            )
        content_type = response.headers.get("Content-Type", "")
        if "json" not in content_type:
            text = response.text
        else:
            try:
                payload = response.json()
            except ValueError as exc:
                raise GenerationError(f"http content source returned invalid JSON: {exc}") from exc
            text = payload.get("content") if isinstance(payload, dict) else None
        if not isinstance(text, str) or not text.strip():
            raise GenerationError(f"http content source returned no content for '{doc_type}'")
        return text
