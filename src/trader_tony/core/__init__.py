"""Event definitions and the asynchronous event bus."""
