"""Shared configuration and logging for the session core."""
