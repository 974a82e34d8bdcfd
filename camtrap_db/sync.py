"""
Template synchronization.

Compares a reference schema (the template) with the schema resident in a
store, and repairs the store so it matches: new fields become new columns,
dropped fields lose their columns, confirmed renames keep their data.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from .database.records import RecordStore
from .exceptions import ErrorKind, SchemaTypeConflict
from .models import SchemaDefinition, ValueType
from .results import Diagnostic, Result, returns_result


@dataclass
class SyncReport:
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    renamed: List[Tuple[str, str]] = field(default_factory=list)
    cosmetically_changed: List[str] = field(default_factory=list)
    removed_choices: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def has_structural_changes(self) -> bool:
        return bool(self.added or self.removed or self.renamed)

    @property
    def is_empty(self) -> bool:
        return not (self.has_structural_changes or self.cosmetically_changed)

    def lines(self) -> List[str]:
        lines = [f"Added: {label}" for label in self.added]
        lines += [f"Removed: {label}" for label in self.removed]
        lines += [f"Renamed: {old} -> {new}" for old, new in self.renamed]
        lines += [f"Changed: {label}" for label in self.cosmetically_changed]
        return lines


class SchemaSynchronizer:
    def __init__(self, reference: SchemaDefinition):
        self.reference = reference

    @returns_result
    def compare(self, resident: SchemaDefinition, renames: Optional[Mapping[str, str]] = None) -> Result[SyncReport]:
        """
        Classifies every field. `renames` maps resident labels to reference
        labels the user has confirmed as renames; they are never guessed.
        Any data label whose value type differs is a SchemaTypeConflict.
        """
        report = SyncReport()
        report.added = [label for label in self.reference.labels if label not in resident]
        report.removed = [label for label in resident.labels if label not in self.reference]

        conflicts = []
        for old, new in (renames or {}).items():
            if old not in report.removed or new not in report.added:
                raise ValueError(f"{old} -> {new} is not a removed/added pair")
            if resident[old].value_type != self.reference[new].value_type:
                conflicts.append(
                    f"Cannot rename {old} ({resident[old].value_type.value}) to "
                    f"{new} ({self.reference[new].value_type.value}): the types differ."
                )
                continue
            report.removed.remove(old)
            report.added.remove(new)
            report.renamed.append((old, new))

        pairs = [(label, label) for label in self.reference.labels if label in resident]
        for resident_label, reference_label in pairs:
            if resident[resident_label].value_type != self.reference[reference_label].value_type:
                conflicts.append(
                    f"{reference_label} is a {resident[resident_label].value_type.value} in the store "
                    f"but a {self.reference[reference_label].value_type.value} in the template."
                )
        if conflicts:
            raise SchemaTypeConflict(conflicts[0], conflicts)

        diagnostics = []
        for resident_label, reference_label in pairs + report.renamed:
            wanted = self.reference[reference_label]
            current = resident[resident_label]
            differences = current.cosmetic_differences(wanted)
            if differences:
                report.cosmetically_changed.append(reference_label)
                diagnostics.append(Diagnostic(
                    ErrorKind.SCHEMA_COSMETIC_DRIFT,
                    f"{reference_label}: {', '.join(differences)} differ from the template.",
                ))
            if wanted.value_type == ValueType.FIXED_CHOICE:
                dropped = [c for c in current.choices if c not in wanted.choices]
                if dropped:
                    report.removed_choices[reference_label] = dropped
                    diagnostics.append(Diagnostic(
                        ErrorKind.CHOICES_REMOVED,
                        f"Choice: {reference_label} no longer includes these list values: {', '.join(dropped)}",
                    ))
        return Result.success(report, diagnostics)

    @returns_result
    def apply(self, records: RecordStore, report: SyncReport, adopt_cosmetic: bool = True) -> Result[SyncReport]:
        """
        Repairs the store in one transaction. A failure leaves the store untouched.
        """
        conn = records.conn
        schema = records.schema
        resident = schema.load()
        records.backups.create_backup_if_needed()
        try:
            if conn.in_transaction:
                conn.commit()
            conn.execute("BEGIN")
            for old, new in report.renamed:
                records.rename_column(resident[old], new)
                schema.rename_field(old, new)
            for label in report.removed:
                records.drop_column(resident[label])
                schema.remove_field(label)
            if any(resident[label].value_type == ValueType.COUNTER for label in report.removed):
                deleted = records.delete_empty_marker_rows()
                logging.info(f"Removed {deleted} empty marker rows")
            for label in report.added:
                added = schema.add_field(self.reference[label])
                records.add_column(added)
            if adopt_cosmetic:
                for descriptor in self.reference:
                    schema.update_field(descriptor)
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            records.reload_schema()
            records.invalidate_detections_cache()
        logging.info(f"Schema synchronized: {len(report.added)} added, {len(report.removed)} removed, "
                     f"{len(report.renamed)} renamed")
        return Result.success(report)

    def synchronize(self,
                    records: RecordStore,
                    renames: Optional[Mapping[str, str]] = None,
                    adopt_cosmetic: bool = True,
                    dry_run: bool = False) -> Result[SyncReport]:
        """Compares and, unless this is a dry run, applies the repair."""
        compared = self.compare(records.schema.load(), renames)
        if not compared.ok or dry_run:
            return compared
        if compared.value.is_empty:
            return compared
        applied = self.apply(records, compared.value, adopt_cosmetic)
        if not applied.ok:
            return applied
        return Result.success(compared.value, compared.diagnostics)
