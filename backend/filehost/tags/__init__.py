"""File metadata tags for chat messages that link to hosted files."""
