"""Feed format detection."""

from __future__ import annotations

XML = "xml"
JSON = "json"
CSV = "csv"


def detect_format(content_type: str | None, content: str) -> str:
    ct = (content_type or "").lower()
    if "xml" in ct:
        return XML
    if "json" in ct:
        return JSON
    if "csv" in ct:
        return CSV
    head = content.lstrip("\ufeff \t\r\n")
    if head.startswith("<"):
        return XML
    if head.startswith(("{", "[")):
        return JSON
    return CSV


def content_type_for_path(path: str) -> str | None:
    ext = path.rsplit(".", 1)[-1].lower() if "." in path else ""
    return {
        "xml": "application/xml",
        "json": "application/json",
        "csv": "text/csv",
    }.get(ext)
