"""She Means Business lounge API service."""
