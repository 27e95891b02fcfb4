"""CoachFlow direct messaging: conversation manager and realtime adapters."""
