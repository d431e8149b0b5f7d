"""Runtime: streaming, reconciliation, logging session and persistence."""
