"""Record store backends and the static fallback dataset."""

from .backends import MemoryRecordBackend, PostgresRecordBackend, RecordBackend, RedisRecordBackend, build_backend
from .fallback import DEMO_SESSION_ID, PROGRAM_CHECKLISTS, StaticFallbackProvider, program_checklist_records

__all__ = [
    "DEMO_SESSION_ID",
    "MemoryRecordBackend",
    "PROGRAM_CHECKLISTS",
    "PostgresRecordBackend",
    "RecordBackend",
    "RedisRecordBackend",
    "StaticFallbackProvider",
    "build_backend",
    "program_checklist_records",
]
