"""Frame transports for the session core."""
