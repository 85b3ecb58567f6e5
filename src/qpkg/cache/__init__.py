"""Fingerprints and persisted build records."""

from .keys import FingerprintInput, fingerprint, fingerprint_input, input_digest
from .store import BuildRecord, BuildRecordStore, RecordStatus

__all__ = [
    "BuildRecord",
    "BuildRecordStore",
    "FingerprintInput",
    "RecordStatus",
    "fingerprint",
    "fingerprint_input",
    "input_digest",
]
