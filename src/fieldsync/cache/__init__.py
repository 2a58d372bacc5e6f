"""Reference data cache with staleness and offline-continuity tracking."""
