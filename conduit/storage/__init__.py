"""
Conduit Storage

Column transforms, identifier generation and the in-memory reference store.
"""

from .columns import ColumnTransformPipeline
from .ids import IdGenerators, SnowflakeGenerator, SqidGenerator, new_ulid
from .memory import TableStore

__all__ = [
    "ColumnTransformPipeline",
    "IdGenerators",
    "SnowflakeGenerator",
    "SqidGenerator",
    "TableStore",
    "new_ulid",
]
