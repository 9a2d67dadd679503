"""Business services for the gateway."""
