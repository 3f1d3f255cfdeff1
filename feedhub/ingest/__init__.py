"""Supplier feed ingestion."""

from __future__ import annotations

import pathlib
from dataclasses import dataclass, field

import yaml

PRESETS_PATH = pathlib.Path(__file__).with_name("field_presets.yml")


@dataclass(slots=True)
class FieldPreset:
    key: str
    name: str
    datatype: str = "text"
    aliases: list[str] = field(default_factory=list)


def load_field_presets(limit: int | None = None) -> list[FieldPreset]:
    data = yaml.safe_load(PRESETS_PATH.read_text())
    presets = [FieldPreset(**item) for item in data]
    if limit:
        return presets[:limit]
    return presets
