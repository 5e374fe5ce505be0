"""Try-on task lifecycle: submission, reconciliation, materialization, retry."""
