"""FileHost: file hosting for chat users."""
