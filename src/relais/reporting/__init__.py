"""Terminal artifacts of a tick: REPORT, BLOCKED and the per-run history archive."""
