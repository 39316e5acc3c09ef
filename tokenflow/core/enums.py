from enum import Enum


class ServiceStatus(str, Enum):
    """Service statuses"""
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"
    UNKNOWN = "unknown"


class IsolationLevel(str, Enum):
    """Transaction isolation levels"""
    READ_COMMITTED = "READ COMMITTED"
    REPEATABLE_READ = "REPEATABLE READ"
    SERIALIZABLE = "SERIALIZABLE"


class Commitment(str, Enum):
    """Ledger confirmation levels accepted by the upstream APIs"""
    PROCESSED = "processed"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"


class BackfillState(str, Enum):
    """
    States of a single mint's backfill run.

    A run starts in PAGING and ends in exactly one terminal state:
    EXHAUSTED (an empty page), TOO_OLD (a transaction older than the
    lookback window) or FAILED (page fetch retries exhausted).
    """
    PAGING = "paging"
    EXHAUSTED = "exhausted"
    TOO_OLD = "too_old"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not BackfillState.PAGING


class BackfillMode(str, Enum):
    """When the ingestion service runs a backfill pass on startup"""
    AUTO = "auto"       # only if live streaming never attached before
    ALWAYS = "always"
    NEVER = "never"


class CheckpointPolicy(str, Enum):
    """
    When the live path advances the stored checkpoint.

    ACCEPTED advances on receipt of an update (transfers staged in memory),
    FLUSHED advances only after the staged transfers were written.
    """
    ACCEPTED = "accepted"
    FLUSHED = "flushed"
