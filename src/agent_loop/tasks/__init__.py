"""Directory-partitioned task queue and its state machine."""
