"""
digest_batch.adapters -- external collaborators behind narrow interfaces.

RecordSource supplies a day's records; Dispatcher sends one notification.
"""

from digest_batch.adapters.dispatcher import (
    Dispatcher,
    InMemoryDispatcher,
    LoggingDispatcher,
    SmtpDispatcher,
    render_summary_html,
)
from digest_batch.adapters.source import (
    InMemoryRecordSource,
    JsonRecordSource,
    RecordSource,
)

__all__ = [
    "Dispatcher",
    "InMemoryDispatcher",
    "InMemoryRecordSource",
    "JsonRecordSource",
    "LoggingDispatcher",
    "RecordSource",
    "SmtpDispatcher",
    "render_summary_html",
]
