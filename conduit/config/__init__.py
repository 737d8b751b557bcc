"""
Conduit Configuration

Document models, fragment loading, linking, snapshots and engine settings.
"""

from .schemas import (
    Column,
    ColumnDefault,
    ColumnPipeline,
    ColumnType,
    Constraint,
    Document,
    Endpoint,
    Job,
    Mapping,
    Pipeline,
    ProviderRef,
    ResponseRule,
    Step,
    SubscriptionEndpoint,
    Table,
)
from .settings import EngineSettings, configure_logging, get_settings
from .loader import load_document, load_tree, parse_document
from .linker import LinkResult, Linker, link
from .store import ConfigStore, Snapshot

__all__ = [
    "Column",
    "ColumnDefault",
    "ColumnPipeline",
    "ColumnType",
    "ConfigStore",
    "Constraint",
    "Document",
    "Endpoint",
    "EngineSettings",
    "Job",
    "LinkResult",
    "Linker",
    "Mapping",
    "Pipeline",
    "ProviderRef",
    "ResponseRule",
    "Snapshot",
    "Step",
    "SubscriptionEndpoint",
    "Table",
    "configure_logging",
    "get_settings",
    "link",
    "load_document",
    "load_tree",
    "parse_document",
]
