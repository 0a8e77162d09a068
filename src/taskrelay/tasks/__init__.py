"""Task queue domain: store, event log, processor and triggers."""
