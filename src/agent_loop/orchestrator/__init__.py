"""Execution loop for CLI coding agents coordinated through the filesystem.

Every loop process is independent: tasks are claimed by moving their record
between status directories, and stop/pause requests arrive as sentinel files.
There is no broker and no shared memory; a crashed loop leaves state that the
next startup reconciles (in-progress tasks reset, orphaned worktrees removed,
dead process records swept lazily by the registry).
"""
