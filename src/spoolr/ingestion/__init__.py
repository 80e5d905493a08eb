"""Spool directory ingestion: discovery, deserialization and reliable reading."""

from .deserializers import (
    DESERIALIZERS,
    BlobDeserializer,
    EventDeserializer,
    LengthPrefixedDeserializer,
    LineDeserializer,
    build_deserializer,
)
from .discovery import DirectoryScanner
from .models import FileCandidate, Record
from .reader import FilePhase, ReliableEventReader, ReliableSpoolingFileReader

__all__ = [
    "DESERIALIZERS",
    "BlobDeserializer",
    "DirectoryScanner",
    "EventDeserializer",
    "FileCandidate",
    "FilePhase",
    "LengthPrefixedDeserializer",
    "LineDeserializer",
    "Record",
    "ReliableEventReader",
    "ReliableSpoolingFileReader",
    "build_deserializer",
]
