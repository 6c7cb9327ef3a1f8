"""Process-wide service wiring."""
