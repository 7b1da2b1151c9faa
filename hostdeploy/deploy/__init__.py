"""Deploy stages and the driver that runs them in order."""
