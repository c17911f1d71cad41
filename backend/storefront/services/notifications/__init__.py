"""Order email notifications."""
