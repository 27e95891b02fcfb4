"""Core utilities for the CoachFlow chat backend."""
