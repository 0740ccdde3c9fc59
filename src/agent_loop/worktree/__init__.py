"""Per-task git isolation: worktree creation, squash-merge completion, reconciliation."""
