"""SMS notification delivery pipeline."""
