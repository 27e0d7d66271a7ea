"""Plan building and plan execution."""
