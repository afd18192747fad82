"""Import matched ICP-OES concentrations into the master spreadsheet."""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from icp_app.engine.column_rules import DiscoveryRules, leading_element
from icp_app.engine.matcher import Match
from icp_app.engine.settings import ReconcileSettings

logger = logging.getLogger(__name__)

ACTION_UPDATE = "update"
ACTION_CREATE = "create"


@dataclass
class ColumnMapping:
    import_column: str
    master_column: Optional[str]
    action: str
    sample_count: int = 0

    @property
    def target_column(self) -> str:
        return self.master_column or self.import_column


@dataclass
class CellChange:
    column: str
    value: Any
    action: str


@dataclass
class SampleUpdate:
    sample_id: str
    changes: List[CellChange] = field(default_factory=list)


@dataclass
class ImportPreview:
    updates: List[SampleUpdate]
    new_columns: List[str]


def data_columns(columns: Iterable[str], rules: DiscoveryRules) -> List[str]:
    """Concentration columns of an import sheet, intensity columns excluded."""

    return [col for col in columns if rules.is_concentration(col) and not rules.is_intensity(col)]


def find_matching_master_column(
    import_column: str,
    master_columns: Sequence[str],
    settings: ReconcileSettings | None = None,
) -> Optional[str]:
    """Master column for the element leading ``import_column``.

    ``"Mg Ax 280.270 nm ppm"`` maps to ``"Mg_ppm"`` when present, otherwise
    to the first master column naming Mg next to a concentration keyword.
    """

    settings = settings or ReconcileSettings()
    element = leading_element(import_column)
    if not element:
        return None
    # the symbol must not run into a lowercase letter, so "S" skips "Si_ppm"
    pattern = re.compile(rf"(?<![A-Za-z]){re.escape(element)}(?![a-z])")
    keywords = [kw.lower() for kw in settings.master_concentration_keywords]
    candidates = [
        col
        for col in master_columns
        if pattern.search(col) and any(kw in col.lower() for kw in keywords)
    ]
    if not candidates:
        return None
    exact = f"{element.lower()}_ppm"
    for col in candidates:
        if col.lower() == exact:
            return col
    return candidates[0]


def auto_map_columns(
    import_columns: Sequence[str],
    master_columns: Sequence[str],
    match_count: int = 0,
    settings: ReconcileSettings | None = None,
) -> List[ColumnMapping]:
    settings = settings or ReconcileSettings()
    rules = DiscoveryRules.from_settings(settings)
    mappings: List[ColumnMapping] = []
    for column in data_columns(import_columns, rules):
        master_column = find_matching_master_column(column, master_columns, settings)
        mappings.append(
            ColumnMapping(
                import_column=column,
                master_column=master_column,
                action=ACTION_UPDATE if master_column else ACTION_CREATE,
                sample_count=match_count,
            )
        )
    logger.info(
        "Mapped %d import columns (%d update, %d new)",
        len(mappings),
        sum(1 for m in mappings if m.action == ACTION_UPDATE),
        sum(1 for m in mappings if m.action == ACTION_CREATE),
    )
    return mappings


def build_import_preview(matches: Sequence[Match], mappings: Sequence[ColumnMapping]) -> ImportPreview:
    new_columns = []
    for mapping in mappings:
        if mapping.action == ACTION_CREATE and mapping.target_column not in new_columns:
            new_columns.append(mapping.target_column)
    updates: List[SampleUpdate] = []
    for match in matches:
        update = SampleUpdate(sample_id=match.target_id)
        for mapping in mappings:
            update.changes.append(
                CellChange(
                    column=mapping.target_column,
                    value=match.source_row.get(mapping.import_column),
                    action=mapping.action,
                )
            )
        updates.append(update)
    return ImportPreview(updates=updates, new_columns=new_columns)


def apply_import(
    master_rows: Sequence[Mapping[str, Any]],
    preview: ImportPreview,
    id_column: str = "Sample ID",
) -> List[Dict[str, Any]]:
    """Return updated copies of ``master_rows`` with the preview applied.

    New columns are added to every row (empty until filled). When several
    imported rows match the same sample the last one wins.
    """

    rows = [dict(row) for row in master_rows]
    for column in preview.new_columns:
        for row in rows:
            row.setdefault(column, None)
    index: Dict[str, List[Dict[str, Any]]] = {}
    for row in rows:
        key = row.get(id_column)
        if key is None:
            continue
        if isinstance(key, float) and key.is_integer():
            key = int(key)
        index.setdefault(str(key).strip(), []).append(row)
    applied = 0
    for update in preview.updates:
        targets = index.get(update.sample_id)
        if not targets:
            logger.warning("Sample '%s' not found in master data", update.sample_id)
            continue
        for change in update.changes:
            targets[0][change.column] = change.value
        applied += 1
    logger.info("Applied %d sample update(s)", applied)
    return rows


def backup_master(path: str | Path, when: date | None = None) -> Path:
    source = Path(path)
    stamp = (when or date.today()).isoformat()
    target = source.with_name(f"{source.stem}_backup_{stamp}{source.suffix}")
    shutil.copy2(source, target)
    logger.info("Backup created: %s", target)
    return target
