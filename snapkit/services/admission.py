import enum

from .ledger import LedgerSnapshot


class Decision(enum.Enum):
    USE_OWN = "own"
    USE_POOL = "pool"
    DENY = "deny"


def decide(snapshot: LedgerSnapshot) -> Decision:
    """Own key bypasses the quota entirely; otherwise the pool is used until the limit."""
    if snapshot.has_own_credential:
        return Decision.USE_OWN
    if snapshot.used < snapshot.limit:
        return Decision.USE_POOL
    return Decision.DENY
