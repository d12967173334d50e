"""Domain state machines."""
