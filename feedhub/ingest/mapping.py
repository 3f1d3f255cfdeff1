"""Resolution, storage and suggestion of supplier field mappings."""

from __future__ import annotations

import logging
import uuid
from typing import Iterable, Sequence

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql import text

from feedhub.ingest import FieldPreset, load_field_presets
from feedhub.ingest.errors import MappingResolutionError, SupplierConfigError
from feedhub.ingest.models import DATATYPES, ById, ByKey, CustomField, FieldMapping, FieldRef, MappingOverride, ResolvedMapping
from feedhub.utils.dates import utc_now

logger = logging.getLogger(__name__)


def field_ref(raw: str, id_to_key: dict[str, str]) -> FieldRef:
    if raw in id_to_key:
        return ById(raw)
    return ByKey(raw)


def ref_key(ref: FieldRef, id_to_key: dict[str, str]) -> str:
    if isinstance(ref, ById):
        return id_to_key[ref.field_id]
    return ref.key


class FieldMappingResolver:
    def __init__(self, engine: Engine, presets: Sequence[FieldPreset] | None = None) -> None:
        self.engine = engine
        self._presets = presets

    def resolve(
        self,
        workspace_id: str,
        supplier_id: str,
        *,
        overrides: Sequence[MappingOverride] | None = None,
        record_keys: Iterable[str] = (),
    ) -> ResolvedMapping:
        try:
            fields = self.load_custom_fields(workspace_id)
        except MappingResolutionError as exc:
            logger.warning("Resolving mappings for supplier %s without custom fields: %s", supplier_id, exc)
            fields = []
        by_key = {f.key: f for f in fields}
        id_to_key = {f.id: f.key for f in fields}

        sources: dict[str, str] = {}
        if overrides:
            for override in overrides:
                if not override.source_field or not override.custom_field_id:
                    continue
                ref = field_ref(override.custom_field_id, id_to_key)
                sources[override.source_field.lower()] = ref_key(ref, id_to_key)
        else:
            try:
                stored = self.load_field_mappings(supplier_id)
            except MappingResolutionError as exc:
                logger.warning("Stored mappings unavailable for supplier %s: %s", supplier_id, exc)
                stored = []
            for mapping in stored:
                ref = field_ref(mapping.field_key, id_to_key)
                sources[mapping.source_key.lower()] = ref_key(ref, id_to_key)

        names = {name.lower() for name in record_keys}
        targeted = set(sources.values())
        for custom_field in fields:
            source = custom_field.key.lower()
            if custom_field.key in targeted or source in sources:
                continue
            if source in names:
                sources[source] = custom_field.key
        logger.info("Resolved %s field mappings for supplier %s", len(sources), supplier_id)
        return ResolvedMapping(sources=sources, fields=by_key, id_to_key=id_to_key)

    def load_custom_fields(self, workspace_id: str) -> list[CustomField]:
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    text(
                        """
                        SELECT id, workspace_id, key, name, datatype, is_required, is_unique,
                               sort_order, use_for_category_mapping
                        FROM custom_fields
                        WHERE workspace_id = :workspace_id
                        ORDER BY sort_order, key
                        """
                    ),
                    {"workspace_id": workspace_id},
                ).mappings().all()
        except SQLAlchemyError as exc:
            raise MappingResolutionError(f"Failed to load custom fields: {exc}") from exc
        return [
            CustomField(
                id=str(row["id"]),
                workspace_id=str(row["workspace_id"]),
                key=row["key"],
                name=row["name"],
                datatype=row["datatype"] if row["datatype"] in DATATYPES else "text",
                is_required=bool(row["is_required"]),
                is_unique=bool(row["is_unique"]),
                sort_order=row["sort_order"] or 0,
                use_for_category_mapping=bool(row["use_for_category_mapping"]),
            )
            for row in rows
        ]

    def load_field_mappings(self, supplier_id: str) -> list[FieldMapping]:
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    text(
                        """
                        SELECT source_key, field_key
                        FROM field_mappings
                        WHERE supplier_id = :supplier_id
                        ORDER BY source_key
                        """
                    ),
                    {"supplier_id": supplier_id},
                ).all()
        except SQLAlchemyError as exc:
            raise MappingResolutionError(f"Failed to load field mappings: {exc}") from exc
        return [FieldMapping(source_key=row[0], field_key=row[1]) for row in rows]

    def save_field_mappings(self, workspace_id: str, supplier_id: str, pairs: Sequence[FieldMapping]) -> int:
        """Replace the supplier's stored mapping set with ``pairs``."""
        errors = validate_field_mappings(pairs)
        if errors:
            raise SupplierConfigError("; ".join(errors))
        now = utc_now()
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    text("DELETE FROM field_mappings WHERE workspace_id = :workspace_id AND supplier_id = :supplier_id"),
                    {"workspace_id": workspace_id, "supplier_id": supplier_id},
                )
                if pairs:
                    conn.execute(
                        text(
                            """
                            INSERT INTO field_mappings (id, workspace_id, supplier_id, source_key, field_key, created_at)
                            VALUES (:id, :workspace_id, :supplier_id, :source_key, :field_key, :created_at)
                            """
                        ),
                        [
                            {
                                "id": str(uuid.uuid4()),
                                "workspace_id": workspace_id,
                                "supplier_id": supplier_id,
                                "source_key": pair.source_key.strip(),
                                "field_key": pair.field_key.strip(),
                                "created_at": now,
                            }
                            for pair in pairs
                        ],
                    )
        except SQLAlchemyError as exc:
            raise SupplierConfigError(f"Failed to save field mappings: {exc}") from exc
        logger.info("Saved %s field mappings for supplier %s", len(pairs), supplier_id)
        return len(pairs)

    def suggest_mappings(self, custom_fields: Sequence[CustomField], source_keys: Iterable[str]) -> list[FieldMapping]:
        available = {key.lower() for key in source_keys}
        aliases = {preset.key: [alias.lower() for alias in preset.aliases] for preset in self.presets}
        suggestions: list[FieldMapping] = []
        for custom_field in custom_fields:
            key_lower = custom_field.key.lower()
            if key_lower in available:
                suggestions.append(FieldMapping(source_key=key_lower, field_key=custom_field.key))
                continue
            for alias in aliases.get(key_lower, ()):
                if alias in available:
                    suggestions.append(FieldMapping(source_key=alias, field_key=custom_field.key))
                    break
        return suggestions

    @property
    def presets(self) -> Sequence[FieldPreset]:
        if self._presets is None:
            self._presets = load_field_presets()
        return self._presets


def validate_field_mappings(pairs: Sequence[FieldMapping]) -> list[str]:
    errors: list[str] = []
    seen: set[str] = set()
    for index, pair in enumerate(pairs):
        source = (pair.source_key or "").strip()
        target = (pair.field_key or "").strip()
        if not source:
            errors.append(f"Mapping {index}: source key is required")
        if not target:
            errors.append(f"Mapping {index}: field key is required")
        if source and source.lower() in seen:
            errors.append(f"Mapping {index}: duplicate source key {source!r}")
        seen.add(source.lower())
    return errors
