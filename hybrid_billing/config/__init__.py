"""Engine configuration and logging setup."""
