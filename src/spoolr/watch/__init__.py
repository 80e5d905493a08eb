"""Watch-mode draining of spool directories."""

from .service import CommitPolicy, DrainResult, RecordSink, WatchService

__all__ = ["CommitPolicy", "DrainResult", "RecordSink", "WatchService"]
