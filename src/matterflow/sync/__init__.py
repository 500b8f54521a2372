"""Calendar and document-folder synchronization engine."""
