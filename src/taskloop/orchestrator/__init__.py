"""Backlog-driven iteration loop for opaque CLI workers.

The loop keeps no state of its own between iterations: the backlog file and
the progress log are the only memory.  Every iteration re-reads both, so a
killed run can be resumed by simply starting the command again.

Execution is strictly sequential.  Each worker invocation sees the persisted
end state of the previous one.
"""
