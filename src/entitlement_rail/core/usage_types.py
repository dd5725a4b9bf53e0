"""
Usage Types

Maps each metered action onto the ledger pool it draws from and the plan-limit
metric it counts against. The mappings are not 1:1: box, carton and pallet
labels all consume the consolidated "sscc" pool while box and carton keep
their own limit metrics.
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional


class UsageType(Enum):
    """Metered actions."""
    UNIT_LABEL = "UNIT_LABEL"
    SSCC_LABEL = "SSCC_LABEL"
    PALLET_LABEL = "PALLET_LABEL"
    BOX_LABEL = "BOX_LABEL"
    CARTON_LABEL = "CARTON_LABEL"
    LABEL_PREVIEW = "LABEL_PREVIEW"
    BULK_GENERATION = "BULK_GENERATION"
    ERP_INGEST = "ERP_INGEST"


class QuotaKind(Enum):
    """Independently tracked balance pools."""
    UNIT = "unit"
    SSCC = "sscc"


class MetricType(Enum):
    """Plan-limit metrics."""
    UNIT = "UNIT"
    BOX = "BOX"
    CARTON = "CARTON"
    SSCC = "SSCC"
    API = "API"


USAGE_TO_QUOTA_KIND: Dict[UsageType, QuotaKind] = {
    UsageType.UNIT_LABEL: QuotaKind.UNIT,
    UsageType.SSCC_LABEL: QuotaKind.SSCC,
    UsageType.PALLET_LABEL: QuotaKind.SSCC,
    UsageType.BOX_LABEL: QuotaKind.SSCC,
    UsageType.CARTON_LABEL: QuotaKind.SSCC,
    UsageType.LABEL_PREVIEW: QuotaKind.SSCC,
    UsageType.BULK_GENERATION: QuotaKind.SSCC,
    UsageType.ERP_INGEST: QuotaKind.SSCC,
}

USAGE_TO_METRIC: Dict[UsageType, MetricType] = {
    UsageType.UNIT_LABEL: MetricType.UNIT,
    UsageType.SSCC_LABEL: MetricType.SSCC,
    UsageType.PALLET_LABEL: MetricType.SSCC,
    UsageType.BOX_LABEL: MetricType.BOX,
    UsageType.CARTON_LABEL: MetricType.CARTON,
    UsageType.LABEL_PREVIEW: MetricType.SSCC,
    UsageType.BULK_GENERATION: MetricType.SSCC,
    UsageType.ERP_INGEST: MetricType.SSCC,
}

# Previews and ERP ingestion never touch the ledger
NON_CONSUMING: FrozenSet[UsageType] = frozenset({
    UsageType.LABEL_PREVIEW,
    UsageType.ERP_INGEST,
})


def parse_usage_type(value: object) -> Optional[UsageType]:
    """Parse a usage type from an enum member or its string value."""
    if isinstance(value, UsageType):
        return value
    if not isinstance(value, str):
        return None
    try:
        return UsageType[value.strip().upper()]
    except KeyError:
        return None


def parse_quota_kind(value: object) -> Optional[QuotaKind]:
    if isinstance(value, QuotaKind):
        return value
    if not isinstance(value, str):
        return None
    try:
        return QuotaKind(value.strip().lower())
    except ValueError:
        return None
