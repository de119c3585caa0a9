"""stackvault command-line interface."""
