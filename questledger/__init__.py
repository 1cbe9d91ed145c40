"""Quest trading ledger and settlement engine."""
