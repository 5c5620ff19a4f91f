"""
Reconciliation of a job's progress sets.
failed = exported - imported, computed on read and never stored.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Set

from core.logging import get_logger
from .job_registry import EXPORTED, IMPORTED, RESOURCE_CATEGORIES, progress_set_name

logger = get_logger("tent_migrate.reconciliation")


@dataclass
class CategoryReconciliation:
    exported: Set[str] = field(default_factory=set)
    imported: Set[str] = field(default_factory=set)
    failed: Set[str] = field(default_factory=set)
    # Imported without ever being exported: registry bug or out-of-band write
    anomalies: Set[str] = field(default_factory=set)


@dataclass
class Reconciliation:
    categories: Dict[str, CategoryReconciliation] = field(default_factory=dict)

    @property
    def exported_ids(self) -> Set[str]:
        return set().union(*(c.exported for c in self.categories.values()))

    @property
    def imported_ids(self) -> Set[str]:
        return set().union(*(c.imported for c in self.categories.values()))

    @property
    def failed_ids(self) -> Set[str]:
        return set().union(*(c.failed for c in self.categories.values()))

    @property
    def has_anomalies(self) -> bool:
        return any(c.anomalies for c in self.categories.values())


def reconcile(
    sets: Mapping[str, Set[str]],
    categories: Iterable[str] = RESOURCE_CATEGORIES,
    job_key: str = None,
) -> Reconciliation:
    """Diff the exported and imported set of every category"""
    result = Reconciliation()
    for category in categories:
        exported = set(sets.get(progress_set_name(EXPORTED, category), ()))
        imported = set(sets.get(progress_set_name(IMPORTED, category), ()))
        entry = CategoryReconciliation(
            exported=exported,
            imported=imported,
            failed=exported - imported,
            anomalies=imported - exported,
        )
        if entry.anomalies:
            logger.warning(
                f"{len(entry.anomalies)} {category} ids imported without being exported",
                job_key=job_key,
                category=category,
                action="reconciliation_anomaly",
                item_ids=sorted(entry.anomalies)[:20],
            )
        result.categories[category] = entry
    return result
