"""ApiTemplate authentication and authorization core."""
