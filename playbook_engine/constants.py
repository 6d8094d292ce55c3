"""Default values shared across the engine."""

DEFAULT_DUPLICATE_WINDOW_SECONDS = 300
DEFAULT_MAX_CONFLICT_RETRIES = 3
DEFAULT_CLAIM_LEASE_SECONDS = 60
DEFAULT_STALE_AFTER_SECONDS = 900
DEFAULT_TIMER_BATCH_SIZE = 100
DEFAULT_MAX_INSTANCES_PER_RUN = 50
DEFAULT_SWEEP_INTERVAL_SECONDS = 30.0

# Business day used when an SLA only counts business hours (9 to 5).
BUSINESS_HOURS_PER_DAY = 8
# Elapsed/allowed ratio beyond which an SLA breach is reported as critical.
SLA_CRITICAL_RATIO = 1.5
