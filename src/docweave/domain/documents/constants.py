"""Constants for the document tracking domain."""

from __future__ import annotations

ERROR_REMEDIATIONS = {
    "DOC_PARSE_UNBALANCED_MARKER": "Close every <!-- manual-edit --> block (or legacy *_START/*_END pair) in the document.",
    "DOC_GENERATION_FAILED": "Check the content source configuration and credentials; the fallback template was used.",
    "DOC_NOT_REGISTERED": "Register the document with `docweave register <path>` before committing updates.",
    "DOC_ALREADY_REGISTERED": "Use `docweave update` for registered documents or unregister it first.",
    "DOC_WRITE_UNCONFIRMED": "Check filesystem permissions and free space, then rerun `docweave update`.",
    "REGISTRY_COMMIT_FAILED": "The document file may be ahead of the registry; rerun `docweave update` to reconcile drift.",
    "REGISTRY_CORRUPTED": "Repair or restore .docweave/registry.json from version control before retrying.",
    "UPDATE_CONFIG_INVALID": "Update .docweave/config.yaml to match the documented schema.",
    "CHANGE_SET_UNRESOLVED": "Pass a change description file or an owner/repo#number pull request reference.",
    "REQUEST_TIMEOUT": "Increase request_queue.timeout_seconds or check the upstream service.",
    "DOC_FILE_MISSING": "Generate the document with `docweave update` or check the path.",
    "DOC_UPDATE_FAILED": "Inspect the error in the update report and rerun `docweave update`.",
}

OPAQUE_SECTION_TITLE = "<document>"
DOCUMENT_CONFLICT_TITLE = "<document>"
PREAMBLE_TITLE = "<preamble>"


def remediation_for(code: str) -> str | None:
    """Return default remediation text for a given error code."""

    return ERROR_REMEDIATIONS.get(code)
