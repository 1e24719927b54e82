from .metadata import MetadataDocument, MetadataStore
from .reconcile import ReconciliationEngine
from .resolver import Direction, resolve
from .settings import EngineSettings

__all__ = [
    "Direction",
    "EngineSettings",
    "MetadataDocument",
    "MetadataStore",
    "ReconciliationEngine",
    "resolve",
]
