"""CoachFlow chat backend application."""
