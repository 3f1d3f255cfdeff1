"""Format-specific record extraction for supplier feeds.

Feeds come from arbitrary third parties, so every strategy is lenient: a
fragment that cannot be read is skipped and the parser returns whatever it
could extract. Only a JSON document that is not JSON at all raises
:class:`ParseError`.
"""

from __future__ import annotations

import csv
import html
import json
import logging
import re
from typing import Any, Iterable, Protocol

from feedhub.ingest.errors import ParseError
from feedhub.ingest.formats import CSV, JSON, XML
from feedhub.ingest.models import ParsedRecord

logger = logging.getLogger(__name__)

WRAPPER_TAGS = frozenset({"product", "item", "entry"})
CONTAINER_TAGS = frozenset({"xml", "root", "data", "products", "items", "entries", "catalog"})
JSON_WRAPPER_KEYS = ("products", "items", "data", "entries")
CSV_DELIMITERS = (",", ";", "\t", "|")

BLOCK_RE = re.compile(r"<(product|item|entry)(?=[\s>/])[^>]*(?<!/)>(.*?)</\1\s*>", re.IGNORECASE | re.DOTALL)
LEAF_RE = re.compile(
    r"<([A-Za-z_][\w:.\-]*)(?:\s[^>]*)?>((?:<!\[CDATA\[.*?\]\]>|[^<])*)</\1\s*>",
    re.DOTALL,
)
CDATA_RE = re.compile(r"<!\[CDATA\[(.*?)\]\]>", re.DOTALL)
COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)


class RecordParser(Protocol):
    def parse(self, content: str) -> list[ParsedRecord]: ...

    def field_names(self, content: str, sample: int | None = None) -> list[str]: ...


def _union_keys(records: Iterable[ParsedRecord]) -> list[str]:
    names: set[str] = set()
    for record in records:
        names.update(record.fields)
    return sorted(names)


def _leaf_text(raw: str) -> str:
    text = CDATA_RE.sub(lambda match: match.group(1), raw)
    return html.unescape(text).strip()


class XmlRecordParser:
    def parse(self, content: str) -> list[ParsedRecord]:
        body = COMMENT_RE.sub("", content)
        records: list[ParsedRecord] = []
        for index, block in enumerate(BLOCK_RE.finditer(body)):
            fields: dict[str, Any] = {}
            for name, raw in LEAF_RE.findall(block.group(2)):
                if name.lower() in WRAPPER_TAGS:
                    continue
                fields[name] = _leaf_text(raw)
            records.append(ParsedRecord(uid=f"xml_{index}", fields=fields))
        if records:
            return records
        return self._parse_flat(body)

    def _parse_flat(self, body: str) -> list[ParsedRecord]:
        fields: dict[str, Any] = {}
        for name, raw in LEAF_RE.findall(body):
            if name.lower() in CONTAINER_TAGS or name in fields:
                continue
            fields[name] = _leaf_text(raw)
        if not fields:
            return []
        return [ParsedRecord(uid="xml_0", fields=fields)]

    def field_names(self, content: str, sample: int | None = None) -> list[str]:
        return _union_keys(self.parse(content)[:sample])


class JsonRecordParser:
    def parse(self, content: str) -> list[ParsedRecord]:
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            items = _ndjson_objects(content)
            if not items:
                raise ParseError(f"Invalid JSON: {exc}") from exc
            return _json_records(items)
        if isinstance(data, list):
            return _json_records(data)
        if isinstance(data, dict):
            for key in JSON_WRAPPER_KEYS:
                if isinstance(data.get(key), list):
                    return _json_records(data[key])
            return _json_records([data])
        return []

    def field_names(self, content: str, sample: int | None = None) -> list[str]:
        return _union_keys(self.parse(content)[:sample])


def _ndjson_objects(content: str) -> list[dict[str, Any]]:
    objects = []
    for line in content.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            value = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            objects.append(value)
    return objects


def _json_records(items: list[Any]) -> list[ParsedRecord]:
    records = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            logger.debug("Skipping non-object JSON element at %s", index)
            continue
        uid = item.get("id") or item.get("uid") or f"json_{index}"
        records.append(ParsedRecord(uid=str(uid), fields=dict(item)))
    return records


class CsvRecordParser:
    def parse(self, content: str) -> list[ParsedRecord]:
        lines = _non_blank_lines(content)
        if not lines:
            return []
        delimiter = detect_delimiter(lines[0])
        headers = _header(lines[0], delimiter)
        records: list[ParsedRecord] = []
        for line in lines[1:]:
            values = _split_row(line, delimiter)
            if values is None:
                continue
            fields = {
                header: value.strip()
                for header, value in zip(headers, values)
                if header
            }
            records.append(ParsedRecord(uid=f"csv_{len(records)}", fields=fields))
        return records

    def field_names(self, content: str, sample: int | None = None) -> list[str]:
        lines = _non_blank_lines(content)
        if not lines:
            return []
        return sorted({name for name in _header(lines[0], detect_delimiter(lines[0])) if name})


def _non_blank_lines(content: str) -> list[str]:
    lines = [line for line in content.splitlines() if line.strip()]
    if lines:
        lines[0] = lines[0].lstrip("\ufeff")
    return lines


def detect_delimiter(header_line: str) -> str:
    best, best_count = ",", 0
    for candidate in CSV_DELIMITERS:
        count = len(header_line.split(candidate))
        if count > best_count:
            best, best_count = candidate, count
    return best


def _split_row(line: str, delimiter: str) -> list[str] | None:
    try:
        return next(csv.reader([line], delimiter=delimiter, skipinitialspace=True))
    except (csv.Error, StopIteration):
        logger.debug("Skipping unreadable CSV line: %r", line[:80])
        return None


def _header(line: str, delimiter: str) -> list[str]:
    cells = _split_row(line, delimiter) or []
    return [cell.strip().replace('"', "").replace("'", "") for cell in cells]


PARSERS: dict[str, RecordParser] = {
    XML: XmlRecordParser(),
    JSON: JsonRecordParser(),
    CSV: CsvRecordParser(),
}


def parse_records(content: str, fmt: str) -> list[ParsedRecord]:
    return PARSERS[fmt].parse(content)


def discover_field_names(content: str, fmt: str, *, sample: int | None = None) -> list[str]:
    return PARSERS[fmt].field_names(content, sample)
